"""Paced, cancellable replay of a copy service's source history."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from contextlib import aclosing
from dataclasses import dataclass
from time import perf_counter
from typing import Protocol

from .config import DEFAULT_BACKFILL_DELAY
from .connection import BackendConnection
from .models import MAX_HISTORY_LIMIT, ChannelId, CopySettings, InboundMessage, MatchedChannel, RelayService
from .structured_logging import log_event
from .utils import RateLimiter

logger = logging.getLogger(__name__)

__all__ = [
    "BackfillTarget",
    "BackfillTaskManager",
    "CancelToken",
    "HistoryWindow",
]

TaskKey = tuple[str, str]


class BackfillTarget(Protocol):
    tenant_id: str
    service_id: str
    service: RelayService
    history_source: MatchedChannel | None

    async def process(
        self, message: InboundMessage, *, source_ids: Sequence[ChannelId]
    ) -> dict[str, int] | None: ...


class CancelToken:
    """Cooperative cancellation flag, checked once per replayed message."""

    __slots__ = ("key", "_cancelled")

    def __init__(self, key: TaskKey):
        self.key = key
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


@dataclass(frozen=True, slots=True)
class HistoryWindow:
    limit: int
    reverse: bool
    min_id: int = 0
    max_id: int = 0

    @classmethod
    def from_settings(cls, copy: CopySettings, max_limit: int = MAX_HISTORY_LIMIT) -> HistoryWindow:
        """Map copy settings onto a history query.

        ``oldest`` walks forward in time. An anchor bounds the window to ids
        below it (``before``) or above it (``after``).
        """

        limit = max(1, min(copy.limit, max_limit))
        min_id = max_id = 0
        if copy.start_from_id:
            if copy.copy_direction == "after":
                min_id = copy.start_from_id
            else:
                max_id = copy.start_from_id
        return cls(limit=limit, reverse=copy.direction == "oldest", min_id=min_id, max_id=max_id)


@dataclass(slots=True)
class _RunningBackfill:
    token: CancelToken
    task: asyncio.Task[int]


class BackfillTaskManager:
    """Registry of running history replays keyed by (tenant, service)."""

    def __init__(
        self,
        *,
        delay: float = DEFAULT_BACKFILL_DELAY,
        max_history_limit: int = MAX_HISTORY_LIMIT,
    ):
        self._delay = delay
        self._max_history_limit = max_history_limit
        self._tasks: dict[TaskKey, _RunningBackfill] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def is_active(self, tenant_id: str, service_id: str) -> bool:
        return (tenant_id, service_id) in self._tasks

    def start(self, target: BackfillTarget, connection: BackendConnection) -> CancelToken:
        key = (target.tenant_id, target.service_id)
        previous = self._tasks.get(key)
        if previous is not None:
            previous.token.cancel()
        token = CancelToken(key)
        window = HistoryWindow.from_settings(target.service.copy, self._max_history_limit)
        task = asyncio.create_task(
            self._run(token, target, connection, window),
            name=f"relay-backfill-{target.service_id}",
        )
        self._tasks[key] = _RunningBackfill(token, task)
        return token

    def cancel(self, token: CancelToken) -> None:
        token.cancel()

    async def cancel_service(self, tenant_id: str, service_id: str) -> bool:
        """Cancel the service's replay and wait for it to wind down."""

        running = self._tasks.get((tenant_id, service_id))
        if running is None:
            return False
        running.token.cancel()
        await asyncio.gather(running.task, return_exceptions=True)
        return True

    async def cancel_all(self) -> None:
        for tenant_id, service_id in list(self._tasks):
            await self.cancel_service(tenant_id, service_id)

    async def wait(self, tenant_id: str, service_id: str) -> int | None:
        running = self._tasks.get((tenant_id, service_id))
        if running is None:
            return None
        return await running.task

    async def _run(
        self,
        token: CancelToken,
        target: BackfillTarget,
        connection: BackendConnection,
        window: HistoryWindow,
    ) -> int:
        source = target.history_source
        processed = 0
        outcome = "success"
        start = perf_counter()
        try:
            if source is None:
                outcome = "skipped"
                return processed
            limiter = RateLimiter(self._delay)
            history = connection.iter_history(
                source,
                limit=window.limit,
                reverse=window.reverse,
                min_id=window.min_id,
                max_id=window.max_id,
            )
            async with aclosing(history):
                async for message in history:
                    if token.cancelled:
                        break
                    await limiter.wait()
                    if token.cancelled:
                        break
                    await target.process(message, source_ids=(source.channel_id,))
                    processed += 1
            if token.cancelled:
                outcome = "cancelled"
        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        except Exception:
            outcome = "failure"
            logger.exception("History copy for service %s failed", target.service_id)
        finally:
            current = self._tasks.get(token.key)
            if current is not None and current.token is token:
                del self._tasks[token.key]
            log_event(
                "backfill_finished",
                level=logging.INFO if outcome != "failure" else logging.ERROR,
                tenant_id=target.tenant_id,
                service_id=target.service_id,
                channel=source.ref if source is not None else None,
                message_id=None,
                outcome=outcome,
                latency_ms=(perf_counter() - start) * 1000,
                extra={"processed": processed, "limit": window.limit},
            )
        return processed
