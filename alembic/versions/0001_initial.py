"""Entitlement, billing, deferred task and referral tables.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

JSONType = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:  # pragma: no cover - migration script
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("plan_id", sa.String(length=32), nullable=False, server_default="free"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("billing_cycle", sa.String(length=16), nullable=False, server_default="monthly"),
        sa.Column("current_period_start", sa.DateTime(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(), nullable=True),
        sa.Column("external_ref", sa.String(length=255), nullable=True),
        sa.Column("last_event_id", sa.String(length=255), nullable=True),
        sa.Column("grace_until", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index(op.f("ix_subscriptions_external_ref"), "subscriptions", ["external_ref"], unique=False)

    op.create_table(
        "billing_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("outcome", sa.String(length=16), nullable=False, server_default="applied"),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(), nullable=True),
    )
    op.create_index(op.f("ix_billing_events_user_id"), "billing_events", ["user_id"], unique=False)

    op.create_table(
        "usage_counters",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("user_id", "action", "day", name="uq_usage_counter_key"),
    )
    op.create_index(op.f("ix_usage_counters_day"), "usage_counters", ["day"], unique=False)

    op.create_table(
        "entitlement_grants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("plan_id", sa.String(length=32), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="referral"),
        sa.Column("referral_grant_id", sa.Integer(), nullable=True),
        sa.Column("starts_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("expired_at", sa.DateTime(), nullable=True),
    )
    op.create_index(op.f("ix_entitlement_grants_user_id"), "entitlement_grants", ["user_id"], unique=False)

    op.create_table(
        "deferred_tasks",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("task_type", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("payload", JSONType, nullable=True),
        sa.Column("scheduled_for", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("claimed_by", sa.String(length=64), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_deferred_tasks_due", "deferred_tasks", ["status", "scheduled_for"], unique=False)
    op.create_index(op.f("ix_deferred_tasks_user_id"), "deferred_tasks", ["user_id"], unique=False)

    op.create_table(
        "referral_codes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=False, unique=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("deactivated_at", sa.DateTime(), nullable=True),
    )
    op.create_index(op.f("ix_referral_codes_user_id"), "referral_codes", ["user_id"], unique=False)
    op.create_index(
        "uq_referral_codes_active_user",
        "referral_codes",
        ["user_id"],
        unique=True,
        sqlite_where=sa.text("active"),
        postgresql_where=sa.text("active"),
    )

    op.create_table(
        "referral_grants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("referrer_id", sa.String(length=64), nullable=False),
        sa.Column("referee_id", sa.String(length=64), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="completed"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("referrer_id", "referee_id", name="uq_referral_pair"),
    )
    op.create_index(op.f("ix_referral_grants_referrer_id"), "referral_grants", ["referrer_id"], unique=False)
    op.create_index(op.f("ix_referral_grants_created_at"), "referral_grants", ["created_at"], unique=False)

    op.create_table(
        "reward_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("referral_grant_id", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("referral_grant_id", "user_id", "kind", name="uq_reward_per_grant"),
    )
    op.create_index(op.f("ix_reward_entries_user_id"), "reward_entries", ["user_id"], unique=False)

    op.create_table(
        "actor_attempts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("scope", sa.String(length=32), nullable=False),
        sa.Column("actor", sa.String(length=128), nullable=False),
        sa.Column("failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("window_started_at", sa.DateTime(), nullable=True),
        sa.Column("locked_until", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("scope", "actor", name="uq_actor_attempt"),
    )


def downgrade() -> None:  # pragma: no cover - migration script
    op.drop_table("actor_attempts")
    op.drop_index(op.f("ix_reward_entries_user_id"), table_name="reward_entries")
    op.drop_table("reward_entries")
    op.drop_index(op.f("ix_referral_grants_created_at"), table_name="referral_grants")
    op.drop_index(op.f("ix_referral_grants_referrer_id"), table_name="referral_grants")
    op.drop_table("referral_grants")
    op.drop_index("uq_referral_codes_active_user", table_name="referral_codes")
    op.drop_index(op.f("ix_referral_codes_user_id"), table_name="referral_codes")
    op.drop_table("referral_codes")
    op.drop_index(op.f("ix_deferred_tasks_user_id"), table_name="deferred_tasks")
    op.drop_index("ix_deferred_tasks_due", table_name="deferred_tasks")
    op.drop_table("deferred_tasks")
    op.drop_index(op.f("ix_entitlement_grants_user_id"), table_name="entitlement_grants")
    op.drop_table("entitlement_grants")
    op.drop_index(op.f("ix_usage_counters_day"), table_name="usage_counters")
    op.drop_table("usage_counters")
    op.drop_index(op.f("ix_billing_events_user_id"), table_name="billing_events")
    op.drop_table("billing_events")
    op.drop_index(op.f("ix_subscriptions_external_ref"), table_name="subscriptions")
    op.drop_table("subscriptions")
