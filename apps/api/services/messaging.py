"""
Outbound chat messaging.

The core only needs "send this text (with optional inline keyboard) to this
chat". TelegramMessenger talks to the Bot API; anything raising DeliveryError
is treated as a transient per-user failure by callers.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from core.config import settings
from core.exceptions import DeliveryError

logger = logging.getLogger(__name__)


class Messenger:
    """Port for outbound messages."""

    def send_message(
        self,
        chat_id: int,
        text: str,
        reply_markup: Optional[Dict[str, Any]] = None,
        parse_mode: Optional[str] = None,
    ) -> None:
        raise NotImplementedError


class TelegramMessenger(Messenger):
    def __init__(self, token: Optional[str] = None, api_url: Optional[str] = None, timeout: Optional[float] = None):
        self.token = token or settings.BOT_TOKEN
        self.api_url = (api_url or settings.TELEGRAM_API_URL).rstrip("/")
        self.timeout = timeout or settings.EXTERNAL_API_TIMEOUT

    def send_message(self, chat_id, text, reply_markup=None, parse_mode=None) -> None:
        if not self.token:
            raise DeliveryError("BOT_TOKEN not configured")

        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        if parse_mode:
            payload["parse_mode"] = parse_mode

        url = f"{self.api_url}/bot{self.token}/sendMessage"
        try:
            r = requests.post(url, json=payload, timeout=self.timeout)
            if r.status_code == 429:
                retry_after = (r.json().get("parameters") or {}).get("retry_after")
                raise DeliveryError(f"Rate limited by Telegram (retry_after={retry_after})")
            r.raise_for_status()
            body = r.json()
        except requests.exceptions.RequestException as e:
            raise DeliveryError(f"sendMessage to {chat_id} failed: {e}") from e
        except ValueError as e:
            raise DeliveryError(f"sendMessage to {chat_id} returned non-JSON body") from e

        if not body.get("ok"):
            raise DeliveryError(f"sendMessage to {chat_id} rejected: {body.get('description')}")


_messenger: Optional[Messenger] = None


def get_messenger() -> Messenger:
    """Process-wide messenger; tests swap it with set_messenger()."""
    global _messenger
    if _messenger is None:
        _messenger = TelegramMessenger()
    return _messenger


def set_messenger(messenger: Optional[Messenger]) -> None:
    global _messenger
    _messenger = messenger


def notify(messenger: Messenger, chat_id: int, text: str, **kwargs: Any) -> bool:
    """Best-effort send for confirmations; failures are logged, never raised."""
    try:
        messenger.send_message(chat_id, text, **kwargs)
        return True
    except DeliveryError as e:
        logger.warning(f"Notification to {chat_id} failed: {e}")
        return False
