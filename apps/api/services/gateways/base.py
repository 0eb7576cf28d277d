"""
Payment gateway port.

A gateway authenticates an inbound event before any field is read, then maps
it to a SubscriptionGrant / GiftPurchase (or None for events that are acked
without effect). Outbound checkout creation lives on the same object.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from schemas import PaymentInstruction

Instruction = PaymentInstruction


@dataclass(frozen=True)
class VerifiedEvent:
    """An authenticated inbound event, identified for the webhook log."""

    provider: str
    event_id: str
    event_type: str
    payload: Any


@dataclass(frozen=True)
class CheckoutSession:
    url: str
    external_id: Optional[str] = None


class PaymentGateway:
    name: str = ""

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        """Authenticate and parse; raises PaymentVerificationError."""
        raise NotImplementedError

    def to_instruction(self, db: Session, event: VerifiedEvent) -> Optional[Instruction]:
        """Map a verified event to a ledger instruction; None means ack without effect."""
        raise NotImplementedError


def hmac_sha256_hex(key: bytes, body: bytes) -> str:
    return hmac.new(key, body, hashlib.sha256).hexdigest()


def signature_matches(expected_hex: str, provided: Optional[str]) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(expected_hex, provided.strip().lower())


def get_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read `key` from SDK objects (attribute access) or plain dicts."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    try:
        return getattr(obj, key)
    except AttributeError:
        return default
