"""Shared test doubles and clock helpers."""
from datetime import datetime, timezone

from core.exceptions import DeliveryError
from services.messaging import Messenger

INTERNAL_TOKEN = "test-internal-token"
INTERNAL_HEADERS = {"X-Internal-Token": INTERNAL_TOKEN}


class RecordingMessenger(Messenger):
    """Captures outbound messages; chat ids in `failing` raise DeliveryError."""

    def __init__(self):
        self.sent = []
        self.failing = set()

    def send_message(self, chat_id, text, reply_markup=None, parse_mode=None):
        if chat_id in self.failing:
            raise DeliveryError(f"chat {chat_id} unreachable")
        self.sent.append({"chat_id": chat_id, "text": text, "reply_markup": reply_markup, "parse_mode": parse_mode})

    def texts_for(self, chat_id):
        return [m["text"] for m in self.sent if m["chat_id"] == chat_id]


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)
