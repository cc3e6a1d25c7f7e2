"""Per-tenant backend connections."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol

from .errors import ConnectionLost, InvalidCredential
from .models import InboundMessage, MatchedChannel

logger = logging.getLogger(__name__)

__all__ = [
    "InboundCallback",
    "BackendConnection",
    "ConnectionFactory",
    "ConnectionRegistry",
]

InboundCallback = Callable[[InboundMessage | None], Awaitable[None]]


class BackendConnection(Protocol):
    """Opaque messaging backend capabilities used by the relay engine."""

    async def connect(self) -> None: ...

    def is_connected(self) -> bool: ...

    async def is_authorized(self) -> bool: ...

    async def disconnect(self) -> None: ...

    async def resolve(self, ref: str) -> MatchedChannel:
        """Resolve a configured identifier or raise ``ChannelResolutionFailed``."""

    async def send(self, channel: MatchedChannel, text: str, *, media: Any = None) -> int:
        """Send a message and return the id it received in ``channel``."""

    async def edit(self, channel: MatchedChannel, message_id: int, text: str) -> None: ...

    def iter_history(
        self,
        channel: MatchedChannel,
        *,
        limit: int,
        reverse: bool,
        min_id: int = 0,
        max_id: int = 0,
    ) -> AsyncIterator[InboundMessage]: ...

    def subscribe(self, callback: InboundCallback) -> None: ...

    def unsubscribe(self) -> None: ...

    async def notify_self(self, text: str) -> None: ...


ConnectionFactory = Callable[[str], BackendConnection]


class ConnectionRegistry:
    """Owns at most one live backend connection per tenant."""

    def __init__(self, factory: ConnectionFactory):
        self._factory = factory
        self._connections: dict[str, BackendConnection] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._connections

    def get(self, tenant_id: str) -> BackendConnection | None:
        return self._connections.get(tenant_id)

    def tenants(self) -> list[str]:
        return list(self._connections)

    async def acquire(self, tenant_id: str, credential: str) -> BackendConnection:
        """Return the tenant's connection, creating or reviving it as needed.

        Raises ``InvalidCredential`` when the session is not authorized and
        ``ConnectionLost`` when a cached connection cannot be re-established.
        """

        async with self._lock(tenant_id):
            connection = self._connections.get(tenant_id)
            if connection is None:
                connection = await self._establish(tenant_id, credential)
                self._connections[tenant_id] = connection
                logger.info("Connected backend session for tenant %s", tenant_id)
                return connection

            if not connection.is_connected():
                logger.warning("Connection for tenant %s is down, reconnecting", tenant_id)
                try:
                    await connection.connect()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    await self._discard(tenant_id)
                    raise ConnectionLost(tenant_id) from exc
                if not connection.is_connected():
                    await self._discard(tenant_id)
                    raise ConnectionLost(tenant_id)

            await self._verify(tenant_id, connection, discard=True)
            return connection

    async def release(self, tenant_id: str) -> None:
        async with self._lock(tenant_id):
            await self._discard(tenant_id)

    async def close_all(self) -> None:
        for tenant_id in list(self._connections):
            await self.release(tenant_id)

    async def _establish(self, tenant_id: str, credential: str) -> BackendConnection:
        if not credential:
            raise InvalidCredential(tenant_id, f"Tenant {tenant_id} has no backend session")
        connection = self._factory(credential)
        try:
            await connection.connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await _quiet_disconnect(connection, tenant_id)
            raise ConnectionLost(tenant_id, f"Could not connect backend session for tenant {tenant_id}") from exc
        await self._verify(tenant_id, connection, discard=False)
        return connection

    async def _verify(self, tenant_id: str, connection: BackendConnection, *, discard: bool) -> None:
        try:
            authorized = await connection.is_authorized()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if discard:
                await self._discard(tenant_id)
            else:
                await _quiet_disconnect(connection, tenant_id)
            raise ConnectionLost(tenant_id) from exc
        if authorized:
            return
        if discard:
            await self._discard(tenant_id)
        else:
            await _quiet_disconnect(connection, tenant_id)
        raise InvalidCredential(tenant_id)

    async def _discard(self, tenant_id: str) -> None:
        connection = self._connections.pop(tenant_id, None)
        if connection is None:
            return
        await _quiet_disconnect(connection, tenant_id)
        logger.info("Released backend session for tenant %s", tenant_id)

    def _lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock


async def _quiet_disconnect(connection: BackendConnection, tenant_id: str) -> None:
    try:
        connection.unsubscribe()
        await connection.disconnect()
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Failed to disconnect backend session for tenant %s", tenant_id)
