"""SQLite backed view of tenants and their relay services."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from .models import DEFAULT_HISTORY_LIMIT, CopySettings, RelayService, ReplacementRule, TenantCredential

logger = logging.getLogger(__name__)

__all__ = ["ServiceDirectory", "SQLiteServiceDirectory"]

_DB_PRAGMA = "PRAGMA journal_mode=WAL;" "PRAGMA synchronous=NORMAL;" "PRAGMA foreign_keys=ON;"


class ServiceDirectory(Protocol):
    """Where the engine reads tenant configuration from."""

    def list_active_services(self, tenant_id: str) -> list[RelayService]: ...

    def get_tenant_credential(self, tenant_id: str) -> TenantCredential | None: ...

    def mark_service_activated(self, service_id: str, moment: datetime) -> None: ...

    def list_tenants_with_active_services(self) -> list[str]: ...


class SQLiteServiceDirectory:
    """Reads the tables maintained by the account and service dashboard."""

    def __init__(self, path: Path):
        self._path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path)
        self._conn.row_factory = sqlite3.Row
        self._setup()

    def _setup(self) -> None:
        with closing(self._conn.cursor()) as cur:
            for statement in _DB_PRAGMA.split(";"):
                if statement.strip():
                    cur.execute(statement)
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT,
                    telegram_session TEXT
                );

                CREATE TABLE IF NOT EXISTS user_settings (
                    user_id TEXT PRIMARY KEY,
                    gemini_api_key TEXT
                );

                CREATE TABLE IF NOT EXISTS forwarding_services (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT DEFAULT '',
                    type TEXT DEFAULT 'forward',
                    source_channels TEXT NOT NULL DEFAULT '[]',
                    target_channels TEXT NOT NULL DEFAULT '[]',
                    search_replace_rules TEXT NOT NULL DEFAULT '[]',
                    prompt_template TEXT,
                    is_active INTEGER DEFAULT 1,
                    copy_history INTEGER DEFAULT 0,
                    history_limit INTEGER DEFAULT 100,
                    history_direction TEXT DEFAULT 'newest',
                    start_from_id TEXT,
                    copy_direction TEXT DEFAULT 'before',
                    service_activated_at TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------
    def get_tenant_credential(self, tenant_id: str) -> TenantCredential | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                """
                SELECT u.telegram_session, us.gemini_api_key
                FROM users u
                LEFT JOIN user_settings us ON u.id = us.user_id
                WHERE u.id = ?
                """,
                (tenant_id,),
            )
            row = cur.fetchone()
        if row is None or not row["telegram_session"]:
            return None
        generation = (row["gemini_api_key"] or "").strip() or None
        return TenantCredential(
            connection_credential=str(row["telegram_session"]),
            generation_credential=generation,
        )

    def list_tenants_with_active_services(self) -> list[str]:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                """
                SELECT DISTINCT u.id
                FROM users u
                INNER JOIN forwarding_services fs ON u.id = fs.user_id
                WHERE fs.is_active = 1
                ORDER BY u.id
                """
            )
            return [str(row["id"]) for row in cur.fetchall()]

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------
    def list_active_services(self, tenant_id: str) -> list[RelayService]:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "SELECT * FROM forwarding_services WHERE user_id = ? AND is_active = 1 ORDER BY created_at, id",
                (tenant_id,),
            )
            rows = cur.fetchall()
        services: list[RelayService] = []
        for row in rows:
            try:
                services.append(_service_from_row(row))
            except (TypeError, ValueError) as exc:
                logger.error("Skipping malformed service %s: %s", row["id"], exc)
        return services

    def mark_service_activated(self, service_id: str, moment: datetime) -> None:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        self._conn.execute(
            "UPDATE forwarding_services SET service_activated_at = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (moment.isoformat(), service_id),
        )
        self._conn.commit()


def _service_from_row(row: sqlite3.Row) -> RelayService:
    keys = row.keys()
    mode = str(row["type"] or "forward")
    start_from = row["start_from_id"]
    copy = CopySettings(
        history_enabled=bool(row["copy_history"]),
        limit=int(row["history_limit"] or DEFAULT_HISTORY_LIMIT),
        direction=str(row["history_direction"] or "newest"),  # type: ignore[arg-type]
        start_from_id=int(start_from) if start_from not in (None, "") else None,
        copy_direction=str(row["copy_direction"] or "before"),  # type: ignore[arg-type]
    )
    activated_raw = row["service_activated_at"] if "service_activated_at" in keys else None
    return RelayService(
        id=str(row["id"]),
        tenant_id=str(row["user_id"]),
        name=str(row["name"] or ""),
        mode=mode,  # type: ignore[arg-type]
        source_channels=_string_list(row["source_channels"], "source_channels"),
        target_channels=_string_list(row["target_channels"], "target_channels"),
        rules=_rules(row["search_replace_rules"]),
        prompt_template=row["prompt_template"],
        copy=copy,
        active=bool(row["is_active"]),
        activated_at=_parse_timestamp(activated_raw),
    )


def _load_json(raw: Any, field_name: str) -> Any:
    if raw is None or raw == "":
        return []
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"column {field_name} is not valid JSON") from exc


def _string_list(raw: Any, field_name: str) -> list[str]:
    data = _load_json(raw, field_name)
    if not isinstance(data, list):
        raise ValueError(f"column {field_name} must hold a JSON list")
    return [str(item).strip() for item in data if str(item).strip()]


def _rules(raw: Any) -> list[ReplacementRule]:
    data = _load_json(raw, "search_replace_rules")
    if not isinstance(data, list):
        raise ValueError("column search_replace_rules must hold a JSON list")
    rules: list[ReplacementRule] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        rules.append(
            ReplacementRule(
                pattern=str(item.get("search") or ""),
                replacement=str(item.get("replace") or ""),
            )
        )
    return rules


def _parse_timestamp(raw: Any) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
