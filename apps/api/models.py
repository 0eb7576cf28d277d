from sqlalchemy import Column, Integer, BigInteger, Boolean, CheckConstraint, Date, DateTime, ForeignKey, JSON, Text, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator
from core.database import Base
from datetime import datetime, timezone


# Autoincrementing 64-bit ids on PostgreSQL; SQLite only autoincrements INTEGER.
BigId = BigInteger().with_variant(Integer, "sqlite")


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamps on every backend.

    SQLite drops tzinfo on round-trip; values are normalized to UTC on the way
    in and re-tagged as UTC on the way out so comparisons with aware `now`
    values never mix naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class User(Base):
    """
    A chat subscriber.

    `current_day` always points at the NEXT content day to deliver; the day most
    recently delivered is `max(current_day - 1, 1)`.
    """
    __tablename__ = "users"

    id = Column(BigId, primary_key=True, autoincrement=True)
    telegram_id = Column(BigInteger, unique=True, nullable=False, index=True)
    first_name = Column(Text, nullable=True)
    name = Column(Text, nullable=True)  # preferred name given during onboarding
    timezone = Column(Text, default="UTC", nullable=False)  # IANA name, e.g. "Europe/Moscow"

    # --- ONBOARDING ---
    onboarding_completed = Column(Boolean, default=False, nullable=False)
    onboarding_completed_at = Column(UTCDateTime, nullable=True)

    # --- PACED STREAM ---
    current_day = Column(Integer, default=1, nullable=False)
    # Null = paced stream not begun; the scheduler ignores such users.
    stream_started_at = Column(UTCDateTime, nullable=True)

    # --- DEFERRED REMINDERS (best effort, window-bounded) ---
    pending_morning_at = Column(UTCDateTime, nullable=True)
    pending_evening_at = Column(UTCDateTime, nullable=True)
    pending_reminder_at = Column(UTCDateTime, nullable=True)  # subscription nudge

    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)

    subscription = relationship("Subscription", back_populates="user", uselist=False, lazy="selectin")

    __table_args__ = (
        CheckConstraint("current_day >= 1", name="ck_users_current_day_positive"),
        Index("ix_users_stream_started_at", "stream_started_at"),
    )

    @property
    def display_name(self) -> str:
        return self.name or self.first_name or "friend"


class Subscription(Base):
    """
    Canonical per-user access ledger.

    `paid_until` null means access is governed by the trial counter only.
    One row per user, created lazily by upsert, never deleted.
    """

    __tablename__ = "subscriptions"

    id = Column(BigId, primary_key=True, autoincrement=True)
    user_id = Column(BigId, ForeignKey("users.id"), nullable=False, unique=True, index=True)

    active = Column(Boolean, default=False, nullable=False)
    paid_until = Column(UTCDateTime, nullable=True)
    trial_days_used = Column(Integer, default=0, nullable=False)
    activated_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    user = relationship("User", back_populates="subscription")

    __table_args__ = (
        CheckConstraint("trial_days_used >= 0", name="ck_subscriptions_trial_days_used"),
        Index("ix_subscriptions_active", "active"),
    )


GIFT_STATUS_CREATED = "created"
GIFT_STATUS_PENDING_EXTERNAL = "pending_external"
GIFT_STATUS_PAID = "paid"
GIFT_STATUS_REDEEMED = "redeemed"


class GiftSubscription(Base):
    """
    One-time redeemable gift.

    Status moves forward only: created|pending_external -> paid -> redeemed.
    """

    __tablename__ = "gift_subscriptions"

    id = Column(BigId, primary_key=True, autoincrement=True)
    token = Column(Text, unique=True, nullable=False, index=True)
    status = Column(Text, default=GIFT_STATUS_CREATED, nullable=False)
    plan_id = Column(Text, nullable=False)
    days = Column(Integer, nullable=False)
    gateway = Column(Text, nullable=True)  # "stripe" | "cryptopay" | "tribute" | "test"

    purchaser_id = Column(BigId, ForeignKey("users.id"), nullable=False, index=True)
    redeemed_by_user_id = Column(BigId, ForeignKey("users.id"), nullable=True)

    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)
    paid_at = Column(UTCDateTime, nullable=True)
    redeemed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'pending_external', 'paid', 'redeemed')",
            name="ck_gift_subscriptions_status",
        ),
        CheckConstraint(
            "(status = 'redeemed' AND redeemed_by_user_id IS NOT NULL AND redeemed_at IS NOT NULL)"
            " OR (status <> 'redeemed' AND redeemed_by_user_id IS NULL)",
            name="ck_gift_subscriptions_redeemed_by",
        ),
        Index("ix_gift_subscriptions_purchaser_status", "purchaser_id", "status"),
    )


class ContentItem(Base):
    """Daily content, identified by a dense day sequence starting at 1. Read-only here."""

    __tablename__ = "content_items"

    id = Column(BigId, primary_key=True, autoincrement=True)
    day = Column(Integer, unique=True, nullable=False, index=True)
    title = Column(Text, nullable=False)
    declaration = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    task = Column(Text, nullable=False)

    __table_args__ = (
        CheckConstraint("day >= 1", name="ck_content_items_day_positive"),
    )


class ProcessedPayment(Base):
    """
    Applied payment confirmations (idempotency guard for grants).

    Keys are namespaced by source: "stripe:<session>", "cryptopay:<invoice>",
    "tribute:<subscription>:<created_at>", "gift:<token>", "test:<uuid>".
    """

    __tablename__ = "processed_payments"

    idempotency_key = Column(Text, primary_key=True)
    source = Column(Text, nullable=False)
    user_id = Column(BigId, ForeignKey("users.id"), nullable=True, index=True)
    days = Column(Integer, nullable=True)
    processed_at = Column(UTCDateTime, server_default=func.now(), nullable=False)


class WebhookEvent(Base):
    """
    Durable record of every authenticated inbound gateway event.

    Providers retry deliveries; the (provider, event_id) pair is unique so the
    raw log never grows on replays.
    """

    __tablename__ = "webhook_events"

    id = Column(BigId, primary_key=True, autoincrement=True)
    provider = Column(Text, nullable=False)
    event_id = Column(Text, nullable=False)
    event_type = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)
    outcome = Column(Text, nullable=True)  # granted | gift_paid | replay | ignored | rejected
    received_at = Column(UTCDateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event_id"),
        Index("ix_webhook_events_event_type", "event_type"),
    )


SLOT_MORNING = "morning"
SLOT_EVENING = "evening"


class DeliveryClaim(Base):
    """
    At most one regular delivery per (user, slot, local date).

    Inserted before sending; a second tick in the same local minute (restart,
    overlapping beat) finds the row and skips.
    """

    __tablename__ = "delivery_claims"

    id = Column(BigId, primary_key=True, autoincrement=True)
    user_id = Column(BigId, ForeignKey("users.id"), nullable=False)
    slot = Column(Text, nullable=False)
    local_date = Column(Date, nullable=False)
    content_day = Column(Integer, nullable=True)
    claimed_at = Column(UTCDateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "slot", "local_date", name="uq_delivery_claims_user_slot_date"),
    )


class AppSetting(Base):
    """Runtime-editable key/value settings (e.g. morning_time = "09:00")."""

    __tablename__ = "app_settings"

    key = Column(Text, primary_key=True)
    value = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False)


class BotMessage(Base):
    """Operator-editable message templates keyed by purpose."""

    __tablename__ = "bot_messages"

    key = Column(Text, primary_key=True)
    text = Column(Text, nullable=False)
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
