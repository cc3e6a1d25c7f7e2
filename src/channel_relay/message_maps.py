"""Correlation tables between source messages and the copies they produced."""

from __future__ import annotations

import json
import logging
import os
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .config import DEFAULT_MESSAGE_TTL

logger = logging.getLogger(__name__)

__all__ = [
    "MessageMapEntry",
    "MessageMapBackend",
    "JsonFileBackend",
    "MessageMapStore",
]

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass(slots=True)
class MessageMapEntry:
    """Destination message ids produced by one source message."""

    targets: dict[str, int] = field(default_factory=dict)
    timestamp: float = 0.0

    def to_json(self) -> dict[str, Any]:
        return {"targets": dict(self.targets), "timestamp": self.timestamp}

    @classmethod
    def from_json(cls, raw: object) -> MessageMapEntry | None:
        if not isinstance(raw, Mapping):
            return None
        targets_raw = raw.get("targets")
        timestamp = raw.get("timestamp")
        if not isinstance(targets_raw, Mapping) or not isinstance(timestamp, int | float):
            return None
        targets: dict[str, int] = {}
        for channel, message_id in targets_raw.items():
            try:
                targets[str(channel)] = int(message_id)
            except (TypeError, ValueError):
                continue
        return cls(targets=targets, timestamp=float(timestamp))


class MessageMapBackend(Protocol):
    """Durable key-value storage holding one record per relay service."""

    def load(self, service_id: str) -> dict[str, Any]: ...

    def save(self, service_id: str, data: Mapping[str, Any]) -> None: ...

    def delete(self, service_id: str) -> bool: ...


class JsonFileBackend:
    """Stores each service's table as a JSON file, replaced atomically."""

    __slots__ = ("_directory",)

    def __init__(self, directory: Path):
        self._directory = directory

    def path_for(self, service_id: str) -> Path:
        safe_id = _UNSAFE_NAME.sub("_", service_id)
        return self._directory / f"service_{safe_id}.json"

    def load(self, service_id: str) -> dict[str, Any]:
        path = self.path_for(service_id)
        if not path.exists():
            return {}
        try:
            with path.open("r", encoding="utf-8") as file:
                raw_data: Any = json.load(file)
        except json.JSONDecodeError:
            # Corrupted file - start fresh but keep backup of original contents.
            backup_path = path.with_suffix(".bak")
            if backup_path.exists():
                backup_path.unlink()
            path.rename(backup_path)
            logger.warning("Message map for service %s was corrupted, moved to %s", service_id, backup_path)
            return {}
        if not isinstance(raw_data, dict):
            return {}
        return raw_data

    def save(self, service_id: str, data: Mapping[str, Any]) -> None:
        path = self.path_for(service_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as file:
            json.dump(dict(data), file, indent=2)
            file.flush()
            os.fsync(file.fileno())
        try:
            tmp_path.replace(path)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise

    def delete(self, service_id: str) -> bool:
        path = self.path_for(service_id)
        if not path.exists():
            return False
        path.unlink()
        return True


class MessageMapStore:
    """TTL-bounded, per-service message map with durable flushes.

    An entry whose age is greater than or equal to ``ttl`` is expired: it is
    never returned by :meth:`lookup` and is purged (in memory and on disk)
    as soon as it is seen.
    """

    def __init__(
        self,
        backend: MessageMapBackend,
        *,
        ttl: float = DEFAULT_MESSAGE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._ttl = ttl
        self._clock = clock
        self._tables: dict[str, dict[str, MessageMapEntry]] = {}
        self._dirty: set[str] = set()

    @property
    def ttl(self) -> float:
        return self._ttl

    def is_loaded(self, service_id: str) -> bool:
        return service_id in self._tables

    def load(self, service_id: str) -> int:
        """Load the durable table into memory, dropping expired entries."""

        now = self._clock()
        table: dict[str, MessageMapEntry] = {}
        dropped = 0
        for key, raw in self._backend.load(service_id).items():
            entry = MessageMapEntry.from_json(raw)
            if entry is None or self._expired(entry, now):
                dropped += 1
                continue
            table[str(key)] = entry
        self._tables[service_id] = table
        if dropped:
            self._dirty.add(service_id)
        logger.info("Service %s: loaded %d active message mappings", service_id, len(table))
        return len(table)

    def record(self, service_id: str, source_key: str, dest_map: Mapping[str, int]) -> MessageMapEntry:
        """Store destination ids for ``source_key`` and refresh its timestamp.

        Ids are merged into a live entry; an expired entry is replaced.
        """

        table = self._table(service_id)
        now = self._clock()
        entry = table.get(source_key)
        if entry is None or self._expired(entry, now):
            entry = MessageMapEntry()
            table[source_key] = entry
        entry.targets.update({str(channel): int(message_id) for channel, message_id in dest_map.items()})
        entry.timestamp = now
        self._dirty.add(service_id)
        return entry

    def lookup(self, service_id: str, source_key: str) -> dict[str, int] | None:
        table = self._table(service_id)
        entry = table.get(source_key)
        if entry is None:
            return None
        if self._expired(entry, self._clock()):
            del table[source_key]
            self._dirty.add(service_id)
            self.flush(service_id)
            return None
        return dict(entry.targets)

    def purge_expired(self, service_id: str) -> int:
        table = self._tables.get(service_id)
        if not table:
            return 0
        now = self._clock()
        expired = [key for key, entry in table.items() if self._expired(entry, now)]
        for key in expired:
            del table[key]
        if expired:
            self._dirty.add(service_id)
            logger.info("Service %s: removed %d expired message mappings", service_id, len(expired))
        return len(expired)

    def flush(self, service_id: str) -> None:
        if service_id not in self._dirty:
            return
        table = self._tables.get(service_id, {})
        self._backend.save(service_id, {key: entry.to_json() for key, entry in table.items()})
        self._dirty.discard(service_id)

    def sweep(self, service_id: str) -> int:
        removed = self.purge_expired(service_id)
        self.flush(service_id)
        return removed

    def unload(self, service_id: str) -> None:
        """Persist and forget the in-memory table of a stopped service."""

        self.sweep(service_id)
        self._tables.pop(service_id, None)

    def delete(self, service_id: str) -> bool:
        self._tables.pop(service_id, None)
        self._dirty.discard(service_id)
        return self._backend.delete(service_id)

    def _table(self, service_id: str) -> dict[str, MessageMapEntry]:
        table = self._tables.get(service_id)
        if table is None:
            self.load(service_id)
            table = self._tables[service_id]
        return table

    def _expired(self, entry: MessageMapEntry, now: float) -> bool:
        return now - entry.timestamp >= self._ttl
