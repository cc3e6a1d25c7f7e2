"""Data models used across the relay engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Sequence

from .errors import InvalidConfiguration

ServiceMode = Literal["forward", "copy"]
HistoryDirection = Literal["newest", "oldest"]
CopyDirection = Literal["before", "after"]

DEFAULT_HISTORY_LIMIT = 100
MAX_HISTORY_LIMIT = 10_000

_SERVICE_MODES: tuple[str, ...] = ("forward", "copy")
_HISTORY_DIRECTIONS: tuple[str, ...] = ("newest", "oldest")
_COPY_DIRECTIONS: tuple[str, ...] = ("before", "after")


@dataclass(frozen=True, slots=True)
class ChannelId:
    """Canonical backend chat identifier.

    Always holds the *marked* peer id (``-100<id>`` for channels, ``-<id>`` for
    basic groups, the plain id for users), so equality is plain int equality.
    """

    value: int

    @classmethod
    def parse(cls, raw: object) -> ChannelId:
        if isinstance(raw, ChannelId):
            return raw
        if isinstance(raw, bool):
            raise ValueError(f"Invalid channel id: {raw!r}")
        if isinstance(raw, int):
            return cls(raw)
        text = str(raw).strip()
        try:
            return cls(int(text))
        except ValueError as exc:
            raise ValueError(f"Invalid channel id: {raw!r}") from exc

    def __str__(self) -> str:
        return str(self.value)


def normalize_channel_ref(identifier: str) -> str:
    """Return the form used to resolve a configured channel identifier.

    ``name``, ``@name`` and ``https://t.me/name`` all become ``@name``; numeric
    ids are returned unchanged.
    """

    text = identifier.strip()
    for prefix in ("https://t.me/", "http://t.me/", "t.me/"):
        if text.lower().startswith(prefix):
            text = text[len(prefix):]
            break
    text = text.strip("/")
    if not text:
        raise ValueError(f"Empty channel identifier: {identifier!r}")
    if text.lstrip("-").isdigit():
        return text
    if not text.startswith("@"):
        text = f"@{text}"
    return text


@dataclass(frozen=True, slots=True)
class MatchedChannel:
    """A configured channel identifier resolved against a live connection."""

    ref: str
    channel_id: ChannelId
    entity: Any = None


@dataclass(frozen=True, slots=True)
class ReplacementRule:
    """Search/replace transformation applied to relayed text."""

    pattern: str
    replacement: str


@dataclass(frozen=True, slots=True)
class CopySettings:
    """History replay options of a copy-mode service."""

    history_enabled: bool = False
    limit: int = DEFAULT_HISTORY_LIMIT
    direction: HistoryDirection = "newest"
    start_from_id: int | None = None
    copy_direction: CopyDirection = "before"


@dataclass(frozen=True, slots=True)
class RelayService:
    """Snapshot of a tenant-owned relay service configuration."""

    id: str
    tenant_id: str
    source_channels: Sequence[str]
    target_channels: Sequence[str]
    mode: ServiceMode = "forward"
    name: str = ""
    rules: Sequence[ReplacementRule] = ()
    prompt_template: str | None = None
    copy: CopySettings = field(default_factory=CopySettings)
    active: bool = True
    activated_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "source_channels", tuple(self.source_channels))
        object.__setattr__(self, "target_channels", tuple(self.target_channels))
        object.__setattr__(self, "rules", tuple(self.rules))
        prompt = (self.prompt_template or "").strip()
        object.__setattr__(self, "prompt_template", prompt or None)

    @property
    def label(self) -> str:
        return self.name or self.id

    @property
    def ai_enabled(self) -> bool:
        return self.prompt_template is not None

    @property
    def wants_backfill(self) -> bool:
        return self.mode == "copy" and self.copy.history_enabled

    def validate(self, max_history_limit: int = MAX_HISTORY_LIMIT) -> None:
        if self.mode not in _SERVICE_MODES:
            raise InvalidConfiguration(
                f"Service {self.id}: mode must be one of {', '.join(_SERVICE_MODES)}"
            )
        if not self.source_channels:
            raise InvalidConfiguration(f"Service {self.id}: at least one source channel is required")
        if not self.target_channels:
            raise InvalidConfiguration(f"Service {self.id}: at least one target channel is required")
        copy = self.copy
        if copy.direction not in _HISTORY_DIRECTIONS:
            raise InvalidConfiguration(
                f"Service {self.id}: history direction must be one of "
                f"{', '.join(_HISTORY_DIRECTIONS)}"
            )
        if copy.copy_direction not in _COPY_DIRECTIONS:
            raise InvalidConfiguration(
                f"Service {self.id}: copy direction must be one of {', '.join(_COPY_DIRECTIONS)}"
            )
        if self.wants_backfill and not 1 <= copy.limit <= max_history_limit:
            raise InvalidConfiguration(
                f"Service {self.id}: history limit must be between 1 and {max_history_limit}"
            )


@dataclass(frozen=True, slots=True)
class TenantCredential:
    connection_credential: str
    generation_credential: str | None = None


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """A new or edited message observed on a tenant's connection."""

    chat_id: ChannelId
    message_id: int
    text: str = ""
    media: Any = None
    is_edit: bool = False

    @property
    def has_content(self) -> bool:
        return bool(self.text) or self.media is not None

    @property
    def source_key(self) -> str:
        return f"{self.chat_id}_{self.message_id}"
