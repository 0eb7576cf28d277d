"""
Timezone resolution for per-user delivery windows.

Delivery slots are configured as local wall-clock "HH:MM" values; each user
gets their slot when their own local clock reads that minute.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from typing import Optional

import zoneinfo

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "UTC"


def resolve_zone(tz_name: Optional[str]) -> zoneinfo.ZoneInfo:
    """
    Return the ZoneInfo for an IANA name.

    Unknown or empty names fall back to UTC.
    """
    if not tz_name:
        return zoneinfo.ZoneInfo(DEFAULT_TIMEZONE)
    try:
        return zoneinfo.ZoneInfo(tz_name)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError) as e:
        logger.debug(f"Invalid timezone '{tz_name}': {e}; using UTC")
        return zoneinfo.ZoneInfo(DEFAULT_TIMEZONE)


def local_now(utc_now: datetime, tz_name: Optional[str]) -> datetime:
    if utc_now.tzinfo is None:
        utc_now = utc_now.replace(tzinfo=timezone.utc)
    return utc_now.astimezone(resolve_zone(tz_name))


def local_hhmm(utc_now: datetime, tz_name: Optional[str]) -> str:
    """Local time-of-day as zero-padded 24h "HH:MM"."""
    return local_now(utc_now, tz_name).strftime("%H:%M")


def local_date(utc_now: datetime, tz_name: Optional[str]) -> date:
    return local_now(utc_now, tz_name).date()


def parse_slot(value: Optional[str]) -> Optional[str]:
    """
    Normalize a configured slot ("9:00", "09:00", " 21:30 ") to "HH:MM".

    Returns None for empty or malformed values, which disables the slot.
    """
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        parsed = time.fromisoformat(raw if len(raw) >= 5 else f"0{raw}")
    except ValueError:
        logger.warning(f"Ignoring malformed delivery slot value: {value!r}")
        return None
    return f"{parsed.hour:02d}:{parsed.minute:02d}"


def is_slot_now(utc_now: datetime, tz_name: Optional[str], slot: Optional[str]) -> bool:
    """True when the user's local clock is exactly on `slot` (minute resolution)."""
    if not slot:
        return False
    return local_hhmm(utc_now, tz_name) == slot
