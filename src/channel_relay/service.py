"""Running state of a single relay service."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from enum import Enum
from time import perf_counter
from typing import Any

from .backfill import BackfillTaskManager, CancelToken
from .config import DEFAULT_SWEEP_INTERVAL
from .connection import BackendConnection
from .errors import ChannelResolutionFailed, EditFailed, NoValidSource, SendFailed
from .message_maps import MessageMapStore
from .models import MAX_HISTORY_LIMIT, ChannelId, InboundMessage, MatchedChannel, RelayService
from .router import EventRouter
from .structured_logging import log_event
from .transform import ContentTransformer, TextGenerator

logger = logging.getLogger(__name__)

__all__ = ["ServiceState", "RelayServiceRuntime"]


class ServiceState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class RelayServiceRuntime:
    """Relays one service's source channels to its destinations.

    A runtime goes Stopped -> Starting -> Running -> Stopping -> Stopped.
    Messages are only handled while Running; a service processes its
    messages one at a time so an edit never overtakes the original send.
    """

    def __init__(
        self,
        service: RelayService,
        connection: BackendConnection,
        *,
        router: EventRouter,
        message_maps: MessageMapStore,
        backfill: BackfillTaskManager,
        generator: TextGenerator | None = None,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        max_history_limit: int = MAX_HISTORY_LIMIT,
    ):
        self.service = service
        self.service_id = service.id
        self.tenant_id = service.tenant_id
        self.state = ServiceState.STOPPED
        self.sources: tuple[MatchedChannel, ...] = ()
        self.targets: tuple[MatchedChannel, ...] = ()
        self._connection = connection
        self._router = router
        self._message_maps = message_maps
        self._backfill = backfill
        self._generator = generator
        self._sweep_interval = sweep_interval
        self._max_history_limit = max_history_limit
        self._transformer = ContentTransformer(service.rules)
        self._source_ids: frozenset[ChannelId] = frozenset()
        self._sweeper: asyncio.Task[None] | None = None
        self.backfill_token: CancelToken | None = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self.state is ServiceState.RUNNING

    @property
    def source_ids(self) -> frozenset[ChannelId]:
        return self._source_ids

    @property
    def history_source(self) -> MatchedChannel | None:
        return self.sources[0] if self.sources else None

    async def start(self) -> None:
        if self.state is not ServiceState.STOPPED:
            return
        self.state = ServiceState.STARTING
        try:
            await self._start()
        except BaseException:
            self._router.unregister(self.service_id)
            sweeper, self._sweeper = self._sweeper, None
            if sweeper is not None:
                sweeper.cancel()
                await asyncio.gather(sweeper, return_exceptions=True)
            self._message_maps.unload(self.service_id)
            self.state = ServiceState.STOPPED
            raise

    async def _start(self) -> None:
        service = self.service
        service.validate(self._max_history_limit)

        self._message_maps.load(self.service_id)

        if service.ai_enabled and self._generator is None:
            logger.warning(
                "Service %s has a prompt template but tenant %s has no generation credential; "
                "AI rewriting is disabled",
                self.service_id,
                self.tenant_id,
            )
        self._transformer = ContentTransformer(
            service.rules,
            prompt_template=service.prompt_template,
            generator=self._generator,
            tenant_id=self.tenant_id,
            service_id=self.service_id,
        )

        self.sources = await self._resolve_all(service.source_channels, role="source")
        if not self.sources:
            raise NoValidSource(self.service_id)
        self.targets = await self._resolve_all(service.target_channels, role="target")
        if not self.targets:
            logger.warning("Service %s has no resolvable target channel", self.service_id)
        self._source_ids = frozenset(channel.channel_id for channel in self.sources)

        self._router.register(self, self._source_ids)
        self._sweeper = asyncio.create_task(
            self._sweep_loop(), name=f"relay-sweep-{self.service_id}"
        )
        self.state = ServiceState.RUNNING

        if service.wants_backfill:
            self.backfill_token = self._backfill.start(self, self._connection)
        logger.info(
            "Service %s started: %d sources, %d targets, mode %s",
            self.service_id,
            len(self.sources),
            len(self.targets),
            service.mode,
        )

    async def stop(self) -> None:
        if self.state is not ServiceState.RUNNING:
            return
        self.state = ServiceState.STOPPING
        try:
            await self._backfill.cancel_service(self.tenant_id, self.service_id)
            self._router.unregister(self.service_id)
            sweeper, self._sweeper = self._sweeper, None
            if sweeper is not None:
                sweeper.cancel()
                await asyncio.gather(sweeper, return_exceptions=True)
            async with self._lock:
                self._message_maps.unload(self.service_id)
        finally:
            self.state = ServiceState.STOPPED
        logger.info("Service %s stopped", self.service_id)

    async def handle(self, message: InboundMessage) -> dict[str, int] | None:
        """Router entry point for live events."""

        if not self.running:
            return None
        return await self.process(message, source_ids=self._source_ids)

    async def process(
        self, message: InboundMessage, *, source_ids: Sequence[ChannelId] | frozenset[ChannelId]
    ) -> dict[str, int] | None:
        """Relay ``message`` if it comes from one of ``source_ids``.

        Returns the destination ids recorded for the message, or ``None`` when
        the message was skipped.
        """

        if message.chat_id not in source_ids or not message.has_content:
            return None
        async with self._lock:
            if not self.running:
                return None
            return await self._relay(message)

    async def _relay(self, message: InboundMessage) -> dict[str, int] | None:
        key = message.source_key
        existing = self._message_maps.lookup(self.service_id, key)
        if message.is_edit and existing is None:
            self._log("edit_dropped", message, outcome="no_mapping")
            return None
        if not message.is_edit and existing is not None:
            self._log("duplicate_skipped", message, outcome="skipped")
            return None

        text = await self._transformer.transform(message.text)

        delivered: dict[str, int] = {}
        for target in self.targets:
            previous_id = existing.get(target.ref) if existing else None
            if previous_id is not None:
                try:
                    await self._edit(target, previous_id, text, message)
                except EditFailed as exc:
                    logger.warning("%s; sending a new message instead", exc)
                else:
                    delivered[target.ref] = previous_id
                    continue
            try:
                delivered[target.ref] = await self._send(target, text, message)
            except SendFailed as exc:
                logger.warning("Service %s: %s", self.service_id, exc)

        if delivered:
            self._message_maps.record(self.service_id, key, delivered)
        return delivered

    async def _send(self, target: MatchedChannel, text: str, message: InboundMessage) -> int:
        start = perf_counter()
        try:
            sent_id = await self._connection.send(target, text, media=message.media)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._log("send", message, channel=target.ref, outcome="failure", start=start, error=exc)
            raise SendFailed(target.ref, f"{type(exc).__name__}: {exc}") from exc
        self._log("send", message, channel=target.ref, outcome="success", start=start, sent_id=sent_id)
        return sent_id

    async def _edit(self, target: MatchedChannel, message_id: int, text: str, message: InboundMessage) -> None:
        start = perf_counter()
        try:
            await self._connection.edit(target, message_id, text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._log("edit", message, channel=target.ref, outcome="failure", start=start, error=exc)
            raise EditFailed(target.ref, message_id, f"{type(exc).__name__}: {exc}") from exc
        self._log("edit", message, channel=target.ref, outcome="success", start=start, sent_id=message_id)

    async def _resolve_all(self, refs: Sequence[str], *, role: str) -> tuple[MatchedChannel, ...]:
        resolved: list[MatchedChannel] = []
        for ref in refs:
            try:
                resolved.append(await self._connection.resolve(ref))
            except ChannelResolutionFailed as exc:
                logger.warning("Service %s: skipping %s channel: %s", self.service_id, role, exc)
        return tuple(resolved)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            async with self._lock:
                try:
                    self._message_maps.sweep(self.service_id)
                except OSError:
                    logger.exception("Failed to persist message map of service %s", self.service_id)

    def _log(
        self,
        event: str,
        message: InboundMessage,
        *,
        outcome: str,
        channel: str | None = None,
        start: float | None = None,
        sent_id: int | None = None,
        error: BaseException | None = None,
    ) -> None:
        extra: dict[str, Any] = {"source": message.source_key, "edit": message.is_edit}
        if sent_id is not None:
            extra["sent_id"] = sent_id
        if error is not None:
            extra["error"] = f"{type(error).__name__}: {error}"
        log_event(
            event,
            level=logging.WARNING if outcome == "failure" else logging.INFO,
            tenant_id=self.tenant_id,
            service_id=self.service_id,
            channel=channel,
            message_id=message.message_id,
            outcome=outcome,
            latency_ms=(perf_counter() - start) * 1000 if start is not None else None,
            extra=extra,
        )
