"""
Runtime settings and message templates.

Operators edit delivery slots and message texts in the database; the
scheduler reads them every tick. Rows are cached in a process-wide TTLCache so
a tick over thousands of users costs a handful of queries. Tests construct
their own cache with a fake clock.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from core.cache import TTLCache
from core.config import settings
from core.database import insert_for
from models import AppSetting, BotMessage
from services.timezone_resolver import parse_slot

logger = logging.getLogger(__name__)

MORNING_TIME_KEY = "morning_time"
EVENING_TIME_KEY = "evening_time"

# Env fallbacks for keys the database may not have yet.
_ENV_DEFAULTS = {
    MORNING_TIME_KEY: lambda: settings.MORNING_TIME,
    EVENING_TIME_KEY: lambda: settings.EVENING_TIME,
}

_default_cache = TTLCache(ttl_seconds=settings.SETTINGS_CACHE_TTL_S)


class SettingsService:
    def __init__(self, db: Session, cache: Optional[TTLCache] = None):
        self.db = db
        self.cache = cache if cache is not None else _default_cache

    def get_setting(self, key: str) -> Optional[str]:
        value = self.cache.get_or_load(f"setting:{key}", lambda: self._load_setting(key))
        if value is None:
            fallback = _ENV_DEFAULTS.get(key)
            return fallback() if fallback else None
        return value

    def _load_setting(self, key: str) -> Optional[str]:
        row = self.db.query(AppSetting).filter(AppSetting.key == key).first()
        return row.value if row else None

    def morning_slot(self) -> Optional[str]:
        """Configured morning slot as "HH:MM", or None when delivery is disabled."""
        return parse_slot(self.get_setting(MORNING_TIME_KEY))

    def evening_slot(self) -> Optional[str]:
        return parse_slot(self.get_setting(EVENING_TIME_KEY))

    def get_message(self, key: str, default: str) -> str:
        text = self.cache.get_or_load(f"message:{key}", lambda: self._load_message(key))
        return text or default

    def _load_message(self, key: str) -> Optional[str]:
        row = self.db.query(BotMessage).filter(BotMessage.key == key).first()
        return row.text if row else None

    def set_setting(self, key: str, value: Optional[str], description: Optional[str] = None) -> None:
        stmt = insert_for(self.db, AppSetting).values(key=key, value=value, description=description)
        stmt = stmt.on_conflict_do_update(
            index_elements=[AppSetting.key],
            set_={"value": value, "description": description},
        )
        self.db.execute(stmt)
        self.db.commit()
        self.cache.delete(f"setting:{key}")
        logger.info(f"Setting updated: {key}={value!r}")

    def set_message(self, key: str, text: str) -> None:
        stmt = insert_for(self.db, BotMessage).values(key=key, text=text)
        stmt = stmt.on_conflict_do_update(index_elements=[BotMessage.key], set_={"text": text})
        self.db.execute(stmt)
        self.db.commit()
        self.cache.delete(f"message:{key}")

    def invalidate(self) -> int:
        return self.cache.invalidate()
