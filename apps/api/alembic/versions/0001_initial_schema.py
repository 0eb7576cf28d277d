"""initial_schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19

Users, subscription ledger, gifts, content, payment idempotency keys,
webhook log, delivery claims and runtime settings.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True, server_default=None):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, server_default=server_default)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("telegram_id", sa.BigInteger(), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("timezone", sa.Text(), nullable=False, server_default="UTC"),
        sa.Column("onboarding_completed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _ts("onboarding_completed_at"),
        sa.Column("current_day", sa.Integer(), nullable=False, server_default="1"),
        _ts("stream_started_at"),
        _ts("pending_morning_at"),
        _ts("pending_evening_at"),
        _ts("pending_reminder_at"),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("current_day >= 1", name="ck_users_current_day_positive"),
    )
    op.create_index("ix_users_telegram_id", "users", ["telegram_id"], unique=True)
    op.create_index("ix_users_stream_started_at", "users", ["stream_started_at"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _ts("paid_until"),
        sa.Column("trial_days_used", sa.Integer(), nullable=False, server_default="0"),
        _ts("activated_at"),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("updated_at", nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("trial_days_used >= 0", name="ck_subscriptions_trial_days_used"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=True)
    op.create_index("ix_subscriptions_active", "subscriptions", ["active"])

    op.create_table(
        "gift_subscriptions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("token", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="created"),
        sa.Column("plan_id", sa.Text(), nullable=False),
        sa.Column("days", sa.Integer(), nullable=False),
        sa.Column("gateway", sa.Text(), nullable=True),
        sa.Column("purchaser_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("redeemed_by_user_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=True),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("paid_at"),
        _ts("redeemed_at"),
        sa.CheckConstraint(
            "status IN ('created', 'pending_external', 'paid', 'redeemed')",
            name="ck_gift_subscriptions_status",
        ),
        sa.CheckConstraint(
            "(status = 'redeemed' AND redeemed_by_user_id IS NOT NULL AND redeemed_at IS NOT NULL)"
            " OR (status <> 'redeemed' AND redeemed_by_user_id IS NULL)",
            name="ck_gift_subscriptions_redeemed_by",
        ),
    )
    op.create_index("ix_gift_subscriptions_token", "gift_subscriptions", ["token"], unique=True)
    op.create_index("ix_gift_subscriptions_purchaser_id", "gift_subscriptions", ["purchaser_id"])
    op.create_index("ix_gift_subscriptions_purchaser_status", "gift_subscriptions", ["purchaser_id", "status"])

    op.create_table(
        "content_items",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("day", sa.Integer(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("declaration", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("task", sa.Text(), nullable=False),
        sa.CheckConstraint("day >= 1", name="ck_content_items_day_positive"),
    )
    op.create_index("ix_content_items_day", "content_items", ["day"], unique=True)

    op.create_table(
        "processed_payments",
        sa.Column("idempotency_key", sa.Text(), primary_key=True),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("days", sa.Integer(), nullable=True),
        _ts("processed_at", nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_processed_payments_user_id", "processed_payments", ["user_id"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("event_id", sa.Text(), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("outcome", sa.Text(), nullable=True),
        _ts("received_at", nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event_id"),
    )
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])

    op.create_table(
        "delivery_claims",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("slot", sa.Text(), nullable=False),
        sa.Column("local_date", sa.Date(), nullable=False),
        sa.Column("content_day", sa.Integer(), nullable=True),
        _ts("claimed_at", nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "slot", "local_date", name="uq_delivery_claims_user_slot_date"),
    )

    op.create_table(
        "app_settings",
        sa.Column("key", sa.Text(), primary_key=True),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        _ts("updated_at", nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "bot_messages",
        sa.Column("key", sa.Text(), primary_key=True),
        sa.Column("text", sa.Text(), nullable=False),
        _ts("updated_at", nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("bot_messages")
    op.drop_table("app_settings")
    op.drop_table("delivery_claims")
    op.drop_index("ix_webhook_events_event_type", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index("ix_processed_payments_user_id", table_name="processed_payments")
    op.drop_table("processed_payments")
    op.drop_index("ix_content_items_day", table_name="content_items")
    op.drop_table("content_items")
    op.drop_index("ix_gift_subscriptions_purchaser_status", table_name="gift_subscriptions")
    op.drop_index("ix_gift_subscriptions_purchaser_id", table_name="gift_subscriptions")
    op.drop_index("ix_gift_subscriptions_token", table_name="gift_subscriptions")
    op.drop_table("gift_subscriptions")
    op.drop_index("ix_subscriptions_active", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_users_stream_started_at", table_name="users")
    op.drop_index("ix_users_telegram_id", table_name="users")
    op.drop_table("users")
