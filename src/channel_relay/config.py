from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

from yaml import safe_load

from .models import MAX_HISTORY_LIMIT

DEFAULT_MESSAGE_TTL: Final[float] = 2 * 60 * 60
DEFAULT_SWEEP_INTERVAL: Final[float] = 30 * 60
DEFAULT_BACKFILL_DELAY: Final[float] = 2.0
DEFAULT_MESSAGE_MAP_DIR: Final[Path] = Path("data/message_maps")
DEFAULT_DATABASE: Final[Path] = Path("relay.sqlite")
DEFAULT_GENERATION_MODEL: Final[str] = "gemini-2.0-flash"
DEFAULT_GENERATION_ENDPOINT: Final[str] = (
    "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
)
DEFAULT_CONTROL_PORT: Final[int] = 1332

__all__ = [
    "DEFAULT_MESSAGE_TTL",
    "DEFAULT_SWEEP_INTERVAL",
    "DEFAULT_BACKFILL_DELAY",
    "TelegramSettings",
    "StorageSettings",
    "RuntimeSettings",
    "GenerationSettings",
    "ControlSettings",
    "RelayConfig",
]


@dataclass(frozen=True, slots=True)
class TelegramSettings:
    """MTProto application credentials and client tuning."""

    api_id: int
    api_hash: str
    connection_retries: int = 20
    retry_delay: float = 5.0
    request_retries: int = 10
    flood_sleep_threshold: int = 120
    timeout: float = 60.0
    device_model: str = "channel-relay"
    app_version: str = "1.0.0"

    def __post_init__(self) -> None:
        object.__setattr__(self, "api_hash", self.api_hash.strip())


@dataclass(frozen=True, slots=True)
class StorageSettings:
    message_map_dir: Path = DEFAULT_MESSAGE_MAP_DIR
    database: Path = DEFAULT_DATABASE


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    """Timing and limits of the relay runtime."""

    message_ttl: float = DEFAULT_MESSAGE_TTL
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    backfill_delay: float = DEFAULT_BACKFILL_DELAY
    max_history_limit: int = MAX_HISTORY_LIMIT
    notify_activation: bool = True
    timezone: str = "UTC"


@dataclass(frozen=True, slots=True)
class GenerationSettings:
    model: str = DEFAULT_GENERATION_MODEL
    endpoint: str = DEFAULT_GENERATION_ENDPOINT
    timeout: float = 60.0


@dataclass(frozen=True, slots=True)
class ControlSettings:
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = DEFAULT_CONTROL_PORT


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Configuration for the relay engine process."""

    telegram: TelegramSettings
    storage: StorageSettings = field(default_factory=StorageSettings)
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    control: ControlSettings = field(default_factory=ControlSettings)

    @classmethod
    def from_file(cls, path: Path) -> RelayConfig:
        path = path.expanduser()
        data = _load_yaml(path)
        path = path.resolve()

        telegram = _parse_telegram(_section(data, "telegram", required=True))
        storage = _parse_storage(_section(data, "storage"), path)
        runtime = _parse_runtime(_section(data, "runtime"))
        generation = _parse_generation(_section(data, "generation"))
        control = _parse_control(_section(data, "control"))

        return cls(
            telegram=telegram,
            storage=storage,
            runtime=runtime,
            generation=generation,
            control=control,
        )


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with path.open("r", encoding="utf-8") as file:
        data = safe_load(file) or {}

    if not isinstance(data, Mapping):
        raise ValueError("Configuration file must contain a mapping at the top level")
    return dict(data)


def _section(data: Mapping[str, Any], name: str, *, required: bool = False) -> Mapping[str, Any]:
    raw = data.get(name)
    if raw is None:
        if required:
            raise ValueError(f"Missing required configuration section: {name}")
        return {}
    if not isinstance(raw, Mapping):
        raise ValueError(f"Configuration section '{name}' must be a mapping")
    return raw


def _parse_telegram(raw: Mapping[str, Any]) -> TelegramSettings:
    try:
        api_id_raw = raw["api_id"]
        api_hash = str(raw["api_hash"]).strip()
    except KeyError as exc:
        missing = exc.args[0]
        raise ValueError(f"Missing required configuration key: telegram.{missing}") from exc

    api_id = _coerce_int(api_id_raw, "telegram.api_id")
    if api_id <= 0:
        raise ValueError("Configuration field 'telegram.api_id' must be a positive integer")
    if not api_hash:
        raise ValueError("Configuration field 'telegram.api_hash' must not be empty")

    return TelegramSettings(
        api_id=api_id,
        api_hash=api_hash,
        connection_retries=_coerce_int(raw.get("connection_retries", 20), "telegram.connection_retries"),
        retry_delay=_non_negative(raw.get("retry_delay", 5.0), "telegram.retry_delay"),
        request_retries=_coerce_int(raw.get("request_retries", 10), "telegram.request_retries"),
        flood_sleep_threshold=_coerce_int(
            raw.get("flood_sleep_threshold", 120), "telegram.flood_sleep_threshold"
        ),
        timeout=_non_negative(raw.get("timeout", 60.0), "telegram.timeout"),
        device_model=str(raw.get("device_model") or "channel-relay"),
        app_version=str(raw.get("app_version") or "1.0.0"),
    )


def _parse_storage(raw: Mapping[str, Any], config_path: Path) -> StorageSettings:
    return StorageSettings(
        message_map_dir=_resolve_path(config_path, raw.get("message_map_dir"), DEFAULT_MESSAGE_MAP_DIR),
        database=_resolve_path(config_path, raw.get("database"), DEFAULT_DATABASE),
    )


def _parse_runtime(raw: Mapping[str, Any]) -> RuntimeSettings:
    message_ttl = _non_negative(raw.get("message_ttl", DEFAULT_MESSAGE_TTL), "runtime.message_ttl")
    if message_ttl <= 0:
        raise ValueError("Configuration field 'runtime.message_ttl' must be positive")
    sweep_interval = _non_negative(
        raw.get("sweep_interval", DEFAULT_SWEEP_INTERVAL), "runtime.sweep_interval"
    )
    if sweep_interval <= 0:
        raise ValueError("Configuration field 'runtime.sweep_interval' must be positive")
    backfill_delay = _non_negative(
        raw.get("backfill_delay", DEFAULT_BACKFILL_DELAY), "runtime.backfill_delay"
    )
    if backfill_delay <= 0:
        raise ValueError("Configuration field 'runtime.backfill_delay' must be positive")
    max_history_limit = _coerce_int(
        raw.get("max_history_limit", MAX_HISTORY_LIMIT), "runtime.max_history_limit"
    )
    if not 1 <= max_history_limit <= MAX_HISTORY_LIMIT:
        raise ValueError(
            f"Configuration field 'runtime.max_history_limit' must be between 1 and {MAX_HISTORY_LIMIT}"
        )
    return RuntimeSettings(
        message_ttl=message_ttl,
        sweep_interval=sweep_interval,
        backfill_delay=backfill_delay,
        max_history_limit=max_history_limit,
        notify_activation=bool(raw.get("notify_activation", True)),
        timezone=str(raw.get("timezone") or "UTC"),
    )


def _parse_generation(raw: Mapping[str, Any]) -> GenerationSettings:
    endpoint = str(raw.get("endpoint") or DEFAULT_GENERATION_ENDPOINT).strip()
    if not endpoint.startswith(("http://", "https://")):
        raise ValueError("Configuration field 'generation.endpoint' must be an http(s) URL")
    return GenerationSettings(
        model=str(raw.get("model") or DEFAULT_GENERATION_MODEL).strip(),
        endpoint=endpoint,
        timeout=_non_negative(raw.get("timeout", 60.0), "generation.timeout"),
    )


def _parse_control(raw: Mapping[str, Any]) -> ControlSettings:
    port = _coerce_int(raw.get("port", DEFAULT_CONTROL_PORT), "control.port")
    if not 0 < port < 65536:
        raise ValueError("Configuration field 'control.port' must be a valid TCP port")
    return ControlSettings(
        enabled=bool(raw.get("enabled", True)),
        host=str(raw.get("host") or "127.0.0.1"),
        port=port,
    )


def _coerce_int(value: object, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Configuration field '{field_name}' must be an integer; got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ValueError(
                f"Configuration field '{field_name}' must be an integer; got {value!r}"
            ) from exc
    raise ValueError(f"Configuration field '{field_name}' must be an integer; got {value!r}")


def _non_negative(value: object, field_name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"Configuration field '{field_name}' must be a number; got {value!r}")
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Configuration field '{field_name}' must be a number; got {value!r}") from exc
    if number < 0:
        raise ValueError(f"Configuration field '{field_name}' cannot be negative")
    return number


def _resolve_path(config_path: Path, raw_value: object, default: Path) -> Path:
    candidate = Path(str(raw_value)).expanduser() if raw_value else default.expanduser()
    if not candidate.is_absolute():
        candidate = (config_path.parent / candidate).resolve()
    return candidate
