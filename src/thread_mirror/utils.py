"""Miscellaneous helpers."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone, tzinfo
from typing import Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import AlreadyRunning

logger = logging.getLogger(__name__)

_DISCORD_EPOCH_MS = 1_420_070_400_000


class SingleFlight:
    """Allow at most one in-flight operation per key.

    A second caller is rejected immediately with :class:`AlreadyRunning`
    instead of waiting for the first one to finish.
    """

    def __init__(self) -> None:
        self._active: set[int] = set()

    def is_running(self, key: int) -> bool:
        return key in self._active

    @contextmanager
    def hold(self, key: int) -> Iterator[None]:
        # No await between the check and the insert, so this is atomic on the loop.
        if key in self._active:
            raise AlreadyRunning(key)
        self._active.add(key)
        try:
            yield
        finally:
            self._active.discard(key)


def parse_delay_setting(value: str | None, default: float = 0.0) -> float:
    if value is None:
        return default
    stripped = value.strip()
    if not stripped:
        return default
    try:
        if any(symbol in stripped for symbol in ".eE"):
            parsed = float(stripped)
        else:
            parsed = float(int(stripped) / 1000)
    except ValueError:
        return default
    return max(0.0, parsed)


def parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse textual boolean configuration values.

    Supported truthy values: ``on``, ``true``, ``yes``, ``1`` (case-insensitive).
    Supported falsy values: ``off``, ``false``, ``no``, ``0``.
    Any other value returns ``default``.
    """

    if value is None:
        return default
    normalized = value.strip().lower()
    if not normalized:
        return default
    if normalized in {"on", "true", "yes", "1"}:
        return True
    if normalized in {"off", "false", "no", "0"}:
        return False
    return default


def parse_int(
    value: str | None, default: int, *, minimum: int = 1, maximum: int | None = None
) -> int:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    parsed = max(minimum, parsed)
    if maximum is not None:
        parsed = min(maximum, parsed)
    return parsed


def resolve_timezone(name: str) -> tzinfo:
    """Return the zone called ``name``, falling back to UTC when unknown."""

    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %r, timestamps will be rendered in UTC", name)
        return timezone.utc


def as_local_time(moment: datetime, zone: tzinfo) -> datetime:
    """Return ``moment`` converted to ``zone``; naive values are treated as UTC."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(zone)


def parse_discord_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None


def snowflake_time(snowflake: int) -> datetime:
    """Creation time encoded in a Discord snowflake."""

    milliseconds = (snowflake >> 22) + _DISCORD_EPOCH_MS
    return datetime.fromtimestamp(milliseconds / 1000, tz=timezone.utc)
