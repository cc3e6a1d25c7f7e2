"""Per-tenant dispatch of inbound events to relay services."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Protocol

from .models import ChannelId, InboundMessage

logger = logging.getLogger(__name__)

__all__ = ["MessageSink", "EventRouter"]


class MessageSink(Protocol):
    service_id: str

    async def handle(self, message: InboundMessage) -> object: ...


class EventRouter:
    """Fans a tenant's inbound stream out to the services watching each chat.

    Events are queued by the connection handler and consumed by one task per
    tenant, so the backend's update loop never waits on relay work. Each
    matching service gets its own task.
    """

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        self._sources: dict[str, tuple[MessageSink, frozenset[ChannelId]]] = {}
        self._index: dict[ChannelId, tuple[MessageSink, ...]] = {}
        self._queue: asyncio.Queue[InboundMessage | None] = asyncio.Queue()
        self._consumer: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def __len__(self) -> int:
        return len(self._sources)

    def services(self) -> list[str]:
        return list(self._sources)

    def register(self, sink: MessageSink, source_ids: Iterable[ChannelId]) -> None:
        self._sources[sink.service_id] = (sink, frozenset(source_ids))
        self._rebuild_index()

    def unregister(self, service_id: str) -> bool:
        if self._sources.pop(service_id, None) is None:
            return False
        self._rebuild_index()
        return True

    def matching(self, chat_id: ChannelId) -> tuple[MessageSink, ...]:
        return self._index.get(chat_id, ())

    def start(self) -> None:
        if self.running:
            return
        self._consumer = asyncio.create_task(
            self._consume(), name=f"relay-router-{self.tenant_id}"
        )

    async def stop(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._drain_queue()

    async def submit(self, message: InboundMessage | None) -> None:
        """Connection callback: enqueue without blocking the update loop."""

        if message is None or not message.has_content:
            return
        self._queue.put_nowait(message)

    async def join(self) -> None:
        """Wait until every queued event has been dispatched and delivered."""

        await self._queue.join()
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def dispatch(self, message: InboundMessage) -> int:
        sinks = self.matching(message.chat_id)
        for sink in sinks:
            task = asyncio.create_task(
                self._deliver(sink, message),
                name=f"relay-{sink.service_id}-{message.source_key}",
            )
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
        return len(sinks)

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                if message is not None:
                    self.dispatch(message)
            finally:
                self._queue.task_done()

    async def _deliver(self, sink: MessageSink, message: InboundMessage) -> None:
        try:
            await sink.handle(message)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Service %s failed to handle message %s", sink.service_id, message.source_key
            )

    def _rebuild_index(self) -> None:
        index: dict[ChannelId, list[MessageSink]] = {}
        for sink, source_ids in self._sources.values():
            for source_id in source_ids:
                index.setdefault(source_id, []).append(sink)
        self._index = {chat_id: tuple(sinks) for chat_id, sinks in index.items()}

    def _drain_queue(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()
