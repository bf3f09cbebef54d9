"""entitlement, usage and webhook ledger tables

Revision ID: 001_entitlements
Revises: None
Create Date: 2026-03-02
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_entitlements"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- user_entitlements ---
    op.create_table(
        "user_entitlements",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("tier", sa.String(16), nullable=False, server_default="FREE"),
        sa.Column("status", sa.String(16), nullable=False, server_default="EXPIRED"),
        sa.Column("external_customer_id", sa.String(255), nullable=True),
        sa.Column("external_subscription_id", sa.String(255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_ts", sa.BigInteger, nullable=True),
        sa.Column("last_event_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_user_entitlements_external_customer_id",
        "user_entitlements",
        ["external_customer_id"],
        unique=True,
    )
    op.create_index(
        "ix_user_entitlements_external_subscription_id",
        "user_entitlements",
        ["external_subscription_id"],
    )

    # --- usage_records ---
    op.create_table(
        "usage_records",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("day", sa.Date, primary_key=True),
        sa.Column("messages_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("voice_seconds_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_usage_records_day", "usage_records", ["day"])

    # --- photo_storage ---
    op.create_table(
        "photo_storage",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("photos_stored", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    # --- webhook_events ---
    op.create_table(
        "webhook_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("outcome", sa.String(32), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_webhook_events_processed_at", "webhook_events", ["processed_at"])


def downgrade() -> None:
    op.drop_index("ix_webhook_events_processed_at", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_table("photo_storage")
    op.drop_index("ix_usage_records_day", table_name="usage_records")
    op.drop_table("usage_records")
    op.drop_index("ix_user_entitlements_external_subscription_id", table_name="user_entitlements")
    op.drop_index("ix_user_entitlements_external_customer_id", table_name="user_entitlements")
    op.drop_table("user_entitlements")
