"""Miscellaneous helpers."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class RateLimiter:
    """Keeps a minimum interval between successive events."""

    def __init__(self, interval: float):
        self.update_interval(interval)
        self._lock = asyncio.Lock()
        self._next_time = 0.0

    @property
    def interval(self) -> float:
        return self._interval

    def update_interval(self, interval: float) -> None:
        self._interval = max(0.0, interval)

    async def wait(self) -> None:
        async with self._lock:
            if self._interval <= 0:
                return
            now = time.perf_counter()
            if now < self._next_time:
                await asyncio.sleep(self._next_time - now)
            self._next_time = time.perf_counter() + self._interval


def resolve_timezone(name: str | None) -> timezone | ZoneInfo:
    """Return the zone named ``name``, falling back to UTC for unknown names."""

    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def as_local_time(moment: datetime, zone_name: str | None) -> datetime:
    """Return ``moment`` converted to the configured notification timezone."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(resolve_timezone(zone_name))


def format_notice_time(moment: datetime, zone_name: str | None) -> str:
    return as_local_time(moment, zone_name).strftime("%Y-%m-%d %H:%M:%S %Z")
