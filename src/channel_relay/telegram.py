"""Telethon-backed implementation of the backend connection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from telethon import TelegramClient, events, utils
from telethon.errors import RPCError
from telethon.sessions import StringSession
from telethon.tl.types import MessageMediaEmpty, MessageMediaWebPage

from .config import TelegramSettings
from .connection import InboundCallback
from .errors import ChannelResolutionFailed
from .models import ChannelId, InboundMessage, MatchedChannel, normalize_channel_ref

logger = logging.getLogger(__name__)

__all__ = [
    "TelethonConnection",
    "build_client",
    "build_inbound",
    "canonical_chat_id",
    "connection_factory",
    "relayable_media",
]

_PARSE_MODE = "html"


def build_client(session: str, settings: TelegramSettings) -> TelegramClient:
    """Create a client for a tenant's string session without connecting it."""

    client = TelegramClient(
        StringSession(session),
        settings.api_id,
        settings.api_hash,
        connection_retries=settings.connection_retries,
        retry_delay=int(settings.retry_delay),
        request_retries=settings.request_retries,
        flood_sleep_threshold=settings.flood_sleep_threshold,
        timeout=int(settings.timeout),
        device_model=settings.device_model,
        app_version=settings.app_version,
        auto_reconnect=True,
    )
    client.parse_mode = _PARSE_MODE
    return client


def canonical_chat_id(peer: Any) -> ChannelId:
    return ChannelId(utils.get_peer_id(peer))


def relayable_media(message: Any) -> Any | None:
    """Return the media worth re-sending; link previews are part of the text."""

    media = getattr(message, "media", None)
    if media is None or isinstance(media, (MessageMediaEmpty, MessageMediaWebPage)):
        return None
    return media


def build_inbound(message: Any, *, is_edit: bool = False) -> InboundMessage | None:
    peer = getattr(message, "peer_id", None)
    message_id = getattr(message, "id", None)
    if peer is None or message_id is None:
        return None
    text = getattr(message, "text", None) or getattr(message, "message", None) or ""
    return InboundMessage(
        chat_id=canonical_chat_id(peer),
        message_id=int(message_id),
        text=text,
        media=relayable_media(message),
        is_edit=is_edit,
    )


class TelethonConnection:
    """One tenant's MTProto user session."""

    __slots__ = ("_client", "_handlers")

    def __init__(self, client: TelegramClient):
        self._client = client
        self._handlers: list[tuple[Callable[..., Any], Any]] = []

    @classmethod
    def from_session(cls, session: str, settings: TelegramSettings) -> TelethonConnection:
        return cls(build_client(session, settings))

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    async def connect(self) -> None:
        await self._client.connect()

    def is_connected(self) -> bool:
        return bool(self._client.is_connected())

    async def is_authorized(self) -> bool:
        return bool(await self._client.is_user_authorized())

    async def disconnect(self) -> None:
        self.unsubscribe()
        await self._client.disconnect()

    async def resolve(self, ref: str) -> MatchedChannel:
        try:
            normalized = normalize_channel_ref(ref)
        except ValueError as exc:
            raise ChannelResolutionFailed(ref, str(exc)) from exc
        target: int | str = int(normalized) if normalized.lstrip("-").isdigit() else normalized
        try:
            entity = await self._client.get_entity(target)
        except (ValueError, TypeError, RPCError, OSError, asyncio.TimeoutError) as exc:
            raise ChannelResolutionFailed(ref, str(exc)) from exc
        return MatchedChannel(ref=ref, channel_id=canonical_chat_id(entity), entity=entity)

    async def send(self, channel: MatchedChannel, text: str, *, media: Any = None) -> int:
        if media is not None:
            sent = await self._client.send_file(
                channel.entity,
                media,
                caption=text or None,
                parse_mode=_PARSE_MODE,
            )
        else:
            sent = await self._client.send_message(channel.entity, text, parse_mode=_PARSE_MODE)
        if isinstance(sent, list):
            sent = sent[0]
        return int(sent.id)

    async def edit(self, channel: MatchedChannel, message_id: int, text: str) -> None:
        await self._client.edit_message(channel.entity, message_id, text, parse_mode=_PARSE_MODE)

    async def iter_history(
        self,
        channel: MatchedChannel,
        *,
        limit: int,
        reverse: bool,
        min_id: int = 0,
        max_id: int = 0,
    ) -> AsyncIterator[InboundMessage]:
        async for message in self._client.iter_messages(
            channel.entity,
            limit=limit,
            reverse=reverse,
            min_id=min_id,
            max_id=max_id,
        ):
            inbound = build_inbound(message)
            if inbound is not None:
                yield inbound

    def subscribe(self, callback: InboundCallback) -> None:
        self.unsubscribe()

        async def on_new_message(event: events.NewMessage.Event) -> None:
            await callback(build_inbound(event.message))

        async def on_message_edited(event: events.MessageEdited.Event) -> None:
            await callback(build_inbound(event.message, is_edit=True))

        new_message = events.NewMessage()
        message_edited = events.MessageEdited()
        self._client.add_event_handler(on_new_message, new_message)
        self._client.add_event_handler(on_message_edited, message_edited)
        self._handlers = [(on_new_message, new_message), (on_message_edited, message_edited)]

    def unsubscribe(self) -> None:
        for handler, event in self._handlers:
            self._client.remove_event_handler(handler, event)
        self._handlers = []

    async def notify_self(self, text: str) -> None:
        await self._client.send_message("me", text)


def connection_factory(settings: TelegramSettings) -> Callable[[str], TelethonConnection]:
    def factory(session: str) -> TelethonConnection:
        return TelethonConnection.from_session(session, settings)

    return factory
