"""Start, stop and restart relay services per tenant."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .backfill import BackfillTaskManager
from .config import RuntimeSettings
from .connection import BackendConnection, ConnectionRegistry
from .directory import ServiceDirectory
from .errors import InvalidCredential, InvalidConfiguration, NoValidSource, ServiceNotFound
from .message_maps import MessageMapStore
from .models import RelayService, TenantCredential
from .router import EventRouter
from .service import RelayServiceRuntime
from .transform import TextGenerator
from .utils import format_notice_time

logger = logging.getLogger(__name__)

__all__ = ["GeneratorFactory", "StartReport", "ServiceOrchestrator"]

GeneratorFactory = Callable[[str], TextGenerator]


@dataclass(slots=True)
class StartReport:
    """Outcome of starting a tenant's services."""

    tenant_id: str
    started: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def to_json(self) -> dict[str, object]:
        return {"tenant_id": self.tenant_id, "started": list(self.started), "failed": dict(self.failed)}


@dataclass(slots=True)
class _TenantRuntime:
    connection: BackendConnection
    router: EventRouter
    credential: TenantCredential
    services: dict[str, RelayServiceRuntime] = field(default_factory=dict)


class ServiceOrchestrator:
    """Owns every running service and the tenant connections they share.

    Operations on one tenant are serialized by a per-tenant lock; a start on a
    tenant that already has running services stops them first.
    """

    def __init__(
        self,
        directory: ServiceDirectory,
        connections: ConnectionRegistry,
        message_maps: MessageMapStore,
        backfill: BackfillTaskManager,
        *,
        generator_factory: GeneratorFactory | None = None,
        runtime: RuntimeSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._directory = directory
        self._connections = connections
        self._message_maps = message_maps
        self._backfill = backfill
        self._generator_factory = generator_factory
        self._runtime = runtime or RuntimeSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._tenants: dict[str, _TenantRuntime] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def running_services(self, tenant_id: str | None = None) -> list[str]:
        if tenant_id is not None:
            tenant = self._tenants.get(tenant_id)
            return list(tenant.services) if tenant else []
        return [service_id for tenant in self._tenants.values() for service_id in tenant.services]

    def get_runtime(self, tenant_id: str, service_id: str) -> RelayServiceRuntime | None:
        tenant = self._tenants.get(tenant_id)
        return tenant.services.get(service_id) if tenant else None

    def router_for(self, tenant_id: str) -> EventRouter | None:
        tenant = self._tenants.get(tenant_id)
        return tenant.router if tenant else None

    def health(self) -> dict[str, object]:
        return {
            "status": "ok",
            "connections": len(self._connections),
            "tenants": len(self._tenants),
            "services": len(self.running_services()),
            "backfills": len(self._backfill),
        }

    # ------------------------------------------------------------------
    # Tenant level
    # ------------------------------------------------------------------
    async def start_tenant_services(self, tenant_id: str) -> StartReport:
        """(Re)start every active service of ``tenant_id``.

        Also the entry point when a tenant's configuration changes: running
        services are stopped before the new snapshots are started.
        """

        async with self._lock(tenant_id):
            await self._stop_services_locked(tenant_id, notify=False)
            report = StartReport(tenant_id)
            services = self._directory.list_active_services(tenant_id)
            if not services:
                logger.info("Tenant %s has no active services", tenant_id)
                await self._teardown_locked(tenant_id)
                return report

            tenant = await self._ensure_tenant_locked(tenant_id)
            for service in services:
                try:
                    await self._start_service_locked(tenant, service)
                except (NoValidSource, InvalidConfiguration) as exc:
                    logger.error("Service %s of tenant %s failed to start: %s", service.id, tenant_id, exc)
                    report.failed[service.id] = str(exc)
                except Exception as exc:
                    logger.exception("Service %s of tenant %s failed to start", service.id, tenant_id)
                    report.failed[service.id] = str(exc) or type(exc).__name__
                else:
                    report.started.append(service.id)

            if not tenant.services:
                await self._teardown_locked(tenant_id)
            logger.info(
                "Tenant %s: %d services running, %d failed",
                tenant_id,
                len(report.started),
                len(report.failed),
            )
            return report

    async def stop_tenant_services(self, tenant_id: str) -> int:
        async with self._lock(tenant_id):
            stopped = await self._stop_services_locked(tenant_id, notify=False)
            await self._teardown_locked(tenant_id)
            return stopped

    async def initialize_all(self) -> dict[str, StartReport]:
        """Start services for every tenant that has active ones."""

        reports: dict[str, StartReport] = {}
        tenants = self._directory.list_tenants_with_active_services()
        logger.info("Found %d tenants with active services", len(tenants))
        for tenant_id in tenants:
            try:
                reports[tenant_id] = await self.start_tenant_services(tenant_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Failed to start services for tenant %s", tenant_id)
        return reports

    async def shutdown(self) -> None:
        for tenant_id in list(self._tenants):
            try:
                await self.stop_tenant_services(tenant_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Failed to stop services of tenant %s", tenant_id)
        await self._backfill.cancel_all()
        await self._connections.close_all()

    # ------------------------------------------------------------------
    # Service level
    # ------------------------------------------------------------------
    async def start_service(self, tenant_id: str, service_id: str) -> RelayServiceRuntime:
        """Start (or restart) one service; startup errors propagate."""

        async with self._lock(tenant_id):
            service = self._find_active(tenant_id, service_id)
            tenant = self._tenants.get(tenant_id)
            if tenant is not None and service_id in tenant.services:
                await self._stop_one_locked(tenant, service_id, notify=False)
            tenant = await self._ensure_tenant_locked(tenant_id)
            try:
                return await self._start_service_locked(tenant, service)
            finally:
                if not tenant.services:
                    await self._teardown_locked(tenant_id)

    async def restart_service(self, tenant_id: str, service_id: str) -> RelayServiceRuntime:
        return await self.start_service(tenant_id, service_id)

    async def stop_service(self, tenant_id: str, service_id: str) -> bool:
        """Stop one service; returns ``False`` when it was not running."""

        async with self._lock(tenant_id):
            tenant = self._tenants.get(tenant_id)
            if tenant is None or service_id not in tenant.services:
                return False
            await self._stop_one_locked(tenant, service_id, notify=True)
            if not tenant.services:
                await self._teardown_locked(tenant_id)
            return True

    async def delete_service_map(self, service_id: str) -> bool:
        """Discard the durable message map of a deleted service."""

        for tenant_id, tenant in list(self._tenants.items()):
            if service_id in tenant.services:
                await self.stop_service(tenant_id, service_id)
        return self._message_maps.delete(service_id)

    # ------------------------------------------------------------------
    # Internals, caller holds the tenant lock
    # ------------------------------------------------------------------
    async def _ensure_tenant_locked(self, tenant_id: str) -> _TenantRuntime:
        credential = self._directory.get_tenant_credential(tenant_id)
        if credential is None or not credential.connection_credential:
            await self._teardown_locked(tenant_id)
            raise InvalidCredential(tenant_id, f"Tenant {tenant_id} has not connected a backend session")

        try:
            connection = await self._connections.acquire(tenant_id, credential.connection_credential)
        except BaseException:
            await self._teardown_locked(tenant_id, release=False)
            raise

        tenant = self._tenants.get(tenant_id)
        if tenant is not None and tenant.connection is connection:
            tenant.credential = credential
            return tenant

        if tenant is not None:
            await tenant.router.stop()
        router = EventRouter(tenant_id)
        router.start()
        connection.subscribe(router.submit)
        tenant = _TenantRuntime(connection=connection, router=router, credential=credential)
        self._tenants[tenant_id] = tenant
        return tenant

    async def _start_service_locked(self, tenant: _TenantRuntime, service: RelayService) -> RelayServiceRuntime:
        runtime = RelayServiceRuntime(
            service,
            tenant.connection,
            router=tenant.router,
            message_maps=self._message_maps,
            backfill=self._backfill,
            generator=self._generator_for(tenant.credential),
            sweep_interval=self._runtime.sweep_interval,
            max_history_limit=self._runtime.max_history_limit,
        )
        await runtime.start()
        tenant.services[service.id] = runtime
        moment = self._clock()
        try:
            self._directory.mark_service_activated(service.id, moment)
        except Exception:
            logger.exception("Failed to record activation of service %s", service.id)
        await self._notify(tenant.connection, f'🟢 Service "{service.label}" activated\n⏰ {self._format_time(moment)}')
        return runtime

    async def _stop_one_locked(self, tenant: _TenantRuntime, service_id: str, *, notify: bool) -> None:
        runtime = tenant.services.pop(service_id)
        await runtime.stop()
        if notify:
            await self._notify(
                tenant.connection,
                f'🔴 Service "{runtime.service.label}" deactivated\n⏰ {self._format_time(self._clock())}',
            )

    async def _stop_services_locked(self, tenant_id: str, *, notify: bool) -> int:
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            return 0
        stopped = 0
        for service_id in list(tenant.services):
            await self._stop_one_locked(tenant, service_id, notify=notify)
            stopped += 1
        return stopped

    async def _teardown_locked(self, tenant_id: str, *, release: bool = True) -> None:
        await self._stop_services_locked(tenant_id, notify=False)
        tenant = self._tenants.pop(tenant_id, None)
        if tenant is not None:
            tenant.connection.unsubscribe()
            await tenant.router.stop()
        if release:
            await self._connections.release(tenant_id)

    def _find_active(self, tenant_id: str, service_id: str) -> RelayService:
        for service in self._directory.list_active_services(tenant_id):
            if service.id == service_id:
                return service
        raise ServiceNotFound(tenant_id, service_id)

    def _generator_for(self, credential: TenantCredential) -> TextGenerator | None:
        if self._generator_factory is None or not credential.generation_credential:
            return None
        return self._generator_factory(credential.generation_credential)

    async def _notify(self, connection: BackendConnection, text: str) -> None:
        if not self._runtime.notify_activation:
            return
        try:
            await connection.notify_self(text)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Failed to send service notice")

    def _format_time(self, moment: datetime) -> str:
        return format_notice_time(moment, self._runtime.timezone)

    def _lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock
