from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from channel_relay.backfill import BackfillTaskManager
from channel_relay.config import RuntimeSettings
from channel_relay.connection import ConnectionRegistry
from channel_relay.errors import ConnectionLost, InvalidCredential, NoValidSource, ServiceNotFound
from channel_relay.message_maps import MessageMapStore
from channel_relay.orchestrator import ServiceOrchestrator
from channel_relay.service import ServiceState
from fakes import (
    C1,
    ConnectionPool,
    FakeClock,
    FakeConnection,
    FakeDirectory,
    FakeGenerator,
    MemoryBackend,
    inbound,
    make_service,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class Setup:
    def __init__(self, *, notify: bool = True, **pool_kwargs: object) -> None:
        self.directory = FakeDirectory()
        self.pool = ConnectionPool(**pool_kwargs)
        self.registry = ConnectionRegistry(self.pool)
        self.backend = MemoryBackend()
        self.maps = MessageMapStore(self.backend, ttl=100.0, clock=FakeClock())
        self.backfill = BackfillTaskManager(delay=0)
        self.generator_keys: list[str] = []
        self.orchestrator = ServiceOrchestrator(
            self.directory,
            self.registry,
            self.maps,
            self.backfill,
            generator_factory=self._generator,
            runtime=RuntimeSettings(notify_activation=notify),
            clock=lambda: NOW,
        )

    def _generator(self, api_key: str) -> FakeGenerator:
        self.generator_keys.append(api_key)
        return FakeGenerator(result="rewritten")


@pytest.mark.asyncio
async def test_start_then_stop_leaves_nothing_behind() -> None:
    setup = Setup()
    setup.directory.add_tenant("tenant-1", make_service("svc-1"), make_service("svc-2"))

    report = await setup.orchestrator.start_tenant_services("tenant-1")
    connection = setup.pool.last
    assert report.started == ["svc-1", "svc-2"]
    assert connection.handler_count == 1

    await setup.orchestrator.stop_tenant_services("tenant-1")

    assert connection.handler_count == 0
    assert len(setup.registry) == 0
    assert not connection.connected
    assert setup.orchestrator.running_services() == []
    assert setup.orchestrator.router_for("tenant-1") is None


@pytest.mark.asyncio
async def test_starting_twice_keeps_one_connection_and_one_dispatch() -> None:
    setup = Setup()
    setup.directory.add_tenant("tenant-1", make_service("svc-1"))

    await setup.orchestrator.start_tenant_services("tenant-1")
    first_runtime = setup.orchestrator.get_runtime("tenant-1", "svc-1")
    await setup.orchestrator.start_tenant_services("tenant-1")
    second_runtime = setup.orchestrator.get_runtime("tenant-1", "svc-1")

    assert len(setup.pool.created) == 1
    assert len(setup.registry) == 1
    assert first_runtime is not None and first_runtime.state is ServiceState.STOPPED
    assert second_runtime is not None and second_runtime.state is ServiceState.RUNNING

    connection = setup.pool.last
    router = setup.orchestrator.router_for("tenant-1")
    assert router is not None and router.services() == ["svc-1"]
    await connection.emit(inbound(C1, 1, "breaking"))
    await router.join()

    assert connection.sent == [("@c2", "breaking", None)]
    await setup.orchestrator.shutdown()


@pytest.mark.asyncio
async def test_restart_applies_new_configuration() -> None:
    setup = Setup()
    setup.directory.add_tenant("tenant-1", make_service("svc-1", targets=("@c2",)))
    await setup.orchestrator.start_tenant_services("tenant-1")

    setup.directory.services["tenant-1"] = [make_service("svc-1", targets=("@c3",))]
    await setup.orchestrator.start_tenant_services("tenant-1")

    connection = setup.pool.last
    router = setup.orchestrator.router_for("tenant-1")
    assert router is not None
    await connection.emit(inbound(C1, 1, "hello"))
    await router.join()

    assert connection.sent == [("@c3", "hello", None)]
    await setup.orchestrator.shutdown()


@pytest.mark.asyncio
async def test_service_without_valid_source_does_not_block_others() -> None:
    setup = Setup()
    setup.directory.add_tenant(
        "tenant-1",
        make_service("svc-bad", sources=("@missing",)),
        make_service("svc-good"),
    )

    report = await setup.orchestrator.start_tenant_services("tenant-1")

    assert report.started == ["svc-good"]
    assert set(report.failed) == {"svc-bad"}
    assert setup.orchestrator.running_services("tenant-1") == ["svc-good"]
    await setup.orchestrator.shutdown()


@pytest.mark.asyncio
async def test_connection_released_when_no_service_starts() -> None:
    setup = Setup()
    setup.directory.add_tenant("tenant-1", make_service("svc-bad", sources=("@missing",)))

    report = await setup.orchestrator.start_tenant_services("tenant-1")

    assert report.started == []
    assert len(setup.registry) == 0
    assert setup.pool.last.handler_count == 0


@pytest.mark.asyncio
async def test_tenant_without_session_is_rejected() -> None:
    setup = Setup()
    setup.directory.services["tenant-1"] = [make_service("svc-1")]

    with pytest.raises(InvalidCredential):
        await setup.orchestrator.start_tenant_services("tenant-1")

    assert setup.pool.created == []


@pytest.mark.asyncio
async def test_unauthorized_session_surfaces_to_caller() -> None:
    setup = Setup(authorized=False)
    setup.directory.add_tenant("tenant-1", make_service("svc-1"))

    with pytest.raises(InvalidCredential):
        await setup.orchestrator.start_tenant_services("tenant-1")

    assert len(setup.registry) == 0


@pytest.mark.asyncio
async def test_activation_and_deactivation_notices() -> None:
    setup = Setup()
    setup.directory.add_tenant(
        "tenant-1", make_service("svc-1", name="Daily news"), make_service("svc-2")
    )
    await setup.orchestrator.start_tenant_services("tenant-1")
    connection = setup.pool.last

    assert setup.directory.activated == [("svc-1", NOW), ("svc-2", NOW)]
    assert len(connection.notices) == 2
    assert 'Service "Daily news" activated' in connection.notices[0]
    assert "2024-01-01 12:00:00" in connection.notices[0]

    assert await setup.orchestrator.stop_service("tenant-1", "svc-1") is True
    assert 'Service "Daily news" deactivated' in connection.notices[-1]
    # Another service still runs, so the connection stays.
    assert len(setup.registry) == 1

    assert await setup.orchestrator.stop_service("tenant-1", "svc-1") is False
    assert await setup.orchestrator.stop_service("tenant-1", "svc-2") is True
    assert len(setup.registry) == 0
    assert connection.handler_count == 0


@pytest.mark.asyncio
async def test_notices_can_be_disabled() -> None:
    setup = Setup(notify=False)
    setup.directory.add_tenant("tenant-1", make_service("svc-1"))

    await setup.orchestrator.start_tenant_services("tenant-1")

    assert setup.pool.last.notices == []
    await setup.orchestrator.shutdown()


@pytest.mark.asyncio
async def test_generator_built_only_with_generation_credential() -> None:
    setup = Setup()
    setup.directory.add_tenant("tenant-1", make_service("svc-1", tenant_id="tenant-1", prompt="Rewrite"), generation="key-1")
    setup.directory.add_tenant("tenant-2", make_service("svc-2", tenant_id="tenant-2", prompt="Rewrite"))

    await setup.orchestrator.start_tenant_services("tenant-1")
    await setup.orchestrator.start_tenant_services("tenant-2")

    assert setup.generator_keys == ["key-1"]
    first, second = setup.pool.created
    for connection, tenant in ((first, "tenant-1"), (second, "tenant-2")):
        router = setup.orchestrator.router_for(tenant)
        assert router is not None
        await connection.emit(inbound(C1, 1, "original"))
        await router.join()

    assert first.sent == [("@c2", "rewritten", None)]
    assert second.sent == [("@c2", "original", None)]
    await setup.orchestrator.shutdown()


@pytest.mark.asyncio
async def test_initialize_all_isolates_failing_tenants() -> None:
    setup = Setup()
    setup.directory.add_tenant("tenant-1", make_service("svc-1", tenant_id="tenant-1"))
    setup.directory.services["tenant-2"] = [make_service("svc-2", tenant_id="tenant-2")]
    setup.directory.add_tenant("tenant-3", make_service("svc-3", tenant_id="tenant-3"))

    reports = await setup.orchestrator.initialize_all()

    assert set(reports) == {"tenant-1", "tenant-3"}
    assert sorted(setup.orchestrator.running_services()) == ["svc-1", "svc-3"]
    health = setup.orchestrator.health()
    assert health["connections"] == 2
    assert health["services"] == 2

    await setup.orchestrator.shutdown()
    assert setup.orchestrator.health()["connections"] == 0
    assert setup.orchestrator.running_services() == []


@pytest.mark.asyncio
async def test_start_service_restarts_single_service() -> None:
    setup = Setup()
    setup.directory.add_tenant("tenant-1", make_service("svc-1"), make_service("svc-2"))
    await setup.orchestrator.start_tenant_services("tenant-1")
    before = setup.orchestrator.get_runtime("tenant-1", "svc-1")

    after = await setup.orchestrator.restart_service("tenant-1", "svc-1")

    assert before is not after
    assert before is not None and before.state is ServiceState.STOPPED
    assert setup.orchestrator.get_runtime("tenant-1", "svc-2") is not None
    assert len(setup.pool.created) == 1

    with pytest.raises(ServiceNotFound):
        await setup.orchestrator.start_service("tenant-1", "svc-unknown")
    await setup.orchestrator.shutdown()


@pytest.mark.asyncio
async def test_start_service_propagates_no_valid_source() -> None:
    setup = Setup()
    setup.directory.add_tenant("tenant-1", make_service("svc-bad", sources=("@missing",)))

    with pytest.raises(NoValidSource):
        await setup.orchestrator.start_service("tenant-1", "svc-bad")

    assert len(setup.registry) == 0


@pytest.mark.asyncio
async def test_delete_service_map_stops_service_and_discards_table() -> None:
    setup = Setup()
    setup.directory.add_tenant("tenant-1", make_service("svc-1"))
    await setup.orchestrator.start_tenant_services("tenant-1")
    connection = setup.pool.last
    router = setup.orchestrator.router_for("tenant-1")
    assert router is not None
    await connection.emit(inbound(C1, 1, "hello"))
    await router.join()

    assert await setup.orchestrator.delete_service_map("svc-1") is True

    assert setup.orchestrator.running_services() == []
    assert "svc-1" not in setup.backend.data


@pytest.mark.asyncio
async def test_inactive_services_are_not_started() -> None:
    setup = Setup()
    inactive = replace(make_service("svc-off"), active=False)
    setup.directory.add_tenant("tenant-1", inactive)

    report = await setup.orchestrator.start_tenant_services("tenant-1")

    assert report.started == []
    assert setup.pool.created == []
    assert len(setup.registry) == 0


@pytest.mark.asyncio
async def test_failed_reconnect_stops_running_services() -> None:
    setup = Setup()
    setup.directory.add_tenant("tenant-1", make_service("svc-1"), make_service("svc-2"))
    await setup.orchestrator.start_tenant_services("tenant-1")
    survivor = setup.orchestrator.get_runtime("tenant-1", "svc-1")
    connection = setup.pool.last
    connection.connected = False
    connection.fail_connect = True

    with pytest.raises(ConnectionLost):
        await setup.orchestrator.start_service("tenant-1", "svc-2")

    assert survivor is not None and survivor.state is ServiceState.STOPPED
    assert setup.orchestrator.running_services() == []
    assert setup.orchestrator.router_for("tenant-1") is None
    assert not setup.maps.is_loaded("svc-1")
    assert len(setup.registry) == 0


@pytest.mark.asyncio
async def test_revoked_session_stops_running_services() -> None:
    setup = Setup()
    setup.directory.add_tenant("tenant-1", make_service("svc-1"), make_service("svc-2"))
    await setup.orchestrator.start_tenant_services("tenant-1")
    survivor = setup.orchestrator.get_runtime("tenant-1", "svc-1")
    del setup.directory.credentials["tenant-1"]

    with pytest.raises(InvalidCredential):
        await setup.orchestrator.start_service("tenant-1", "svc-2")

    assert survivor is not None and survivor.state is ServiceState.STOPPED
    assert setup.orchestrator.running_services() == []
    assert len(setup.registry) == 0


@pytest.mark.asyncio
async def test_transport_error_while_resolving_does_not_block_other_services() -> None:
    class FlakyPool(ConnectionPool):
        def __call__(self, credential: str) -> FakeConnection:
            connection = super().__call__(credential)
            connection.resolve_errors["@c3"] = ConnectionError("Connection to Telegram failed")
            return connection

    setup = Setup()
    setup.pool = FlakyPool()
    setup.registry = ConnectionRegistry(setup.pool)
    setup.orchestrator = ServiceOrchestrator(setup.directory, setup.registry, setup.maps, setup.backfill)
    setup.directory.add_tenant(
        "tenant-1",
        make_service("svc-1", sources=("@c1", "@c3")),
        make_service("svc-2"),
    )

    report = await setup.orchestrator.start_tenant_services("tenant-1")

    assert report.started == ["svc-2"]
    assert "Connection to Telegram failed" in report.failed["svc-1"]
    assert setup.orchestrator.running_services("tenant-1") == ["svc-2"]
    await setup.orchestrator.shutdown()


@pytest.mark.asyncio
async def test_concurrent_operations_on_one_tenant_are_serialized() -> None:
    setup = Setup()
    setup.directory.add_tenant("tenant-1", make_service("svc-1"), make_service("svc-2"))

    await asyncio.gather(
        setup.orchestrator.start_tenant_services("tenant-1"),
        setup.orchestrator.start_tenant_services("tenant-1"),
        setup.orchestrator.stop_service("tenant-1", "svc-1"),
        setup.orchestrator.start_tenant_services("tenant-1"),
    )

    router = setup.orchestrator.router_for("tenant-1")
    assert len(setup.pool.created) == 1
    assert setup.pool.last.handler_count == 1
    assert sorted(setup.orchestrator.running_services("tenant-1")) == ["svc-1", "svc-2"]
    assert router is not None and sorted(router.services()) == ["svc-1", "svc-2"]
    await setup.orchestrator.shutdown()
