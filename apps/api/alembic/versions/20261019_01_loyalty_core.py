"""Loyalty punch-card core tables.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENUMS = {
    "loyalty_reward_status": ("no_progress", "in_progress", "earned", "redeemed", "revoked"),
    "loyalty_split_role": ("original", "locked", "excess"),
    "loyalty_redemption_type": ("order_discount", "manual_admin", "auto_detected"),
    "loyalty_detection_method": ("catalog_object_id", "free_item_fallback", "discount_amount_fallback"),
    "loyalty_vendor_credit_status": ("not_submitted", "submitted", "credited", "denied"),
    "loyalty_processed_order_result": ("pending", "qualifying", "non_qualifying", "no_customer", "no_line_items"),
    "loyalty_audit_trigger": ("SYSTEM", "WEBHOOK", "ADMIN", "EXPIRATION_CLEANUP", "BACKFILL"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)
        )
    return columns


def upgrade() -> None:
    for name, values in ENUMS.items():
        labels = ", ".join(f"'{value}'" for value in values)
        op.execute(f"""
            DO $$ BEGIN
                IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = '{name}') THEN
                    CREATE TYPE {name} AS ENUM ({labels});
                END IF;
            END $$;
        """)

    op.create_table(
        "loyalty_offers",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("brand_name", sa.String(), nullable=False),
        sa.Column("size_group", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("required_quantity", sa.Integer(), nullable=False),
        sa.Column("window_months", sa.Integer(), nullable=False, server_default="12"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "brand_name", "size_group", name="uq_loyalty_offers_tenant_brand_size"),
    )
    op.create_index("ix_loyalty_offers_tenant_id", "loyalty_offers", ["tenant_id"])

    op.create_table(
        "loyalty_qualifying_variations",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), nullable=False),
        sa.Column("offer_id", _uuid(), sa.ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("variation_id", sa.String(), nullable=False),
        sa.Column("item_name", sa.String(), nullable=True),
        sa.Column("variation_name", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(updated=False),
        sa.UniqueConstraint(
            "tenant_id", "variation_id", name="uq_loyalty_qualifying_variations_tenant_variation"
        ),
    )
    op.create_index(
        "ix_loyalty_qualifying_variations_tenant_id", "loyalty_qualifying_variations", ["tenant_id"]
    )

    op.create_table(
        "loyalty_rewards",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), nullable=False),
        sa.Column("offer_id", _uuid(), sa.ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("status", _enum("loyalty_reward_status"), nullable=False, server_default="in_progress"),
        sa.Column("current_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("required_quantity", sa.Integer(), nullable=False),
        sa.Column("window_start_date", sa.Date(), nullable=True),
        sa.Column("window_end_date", sa.Date(), nullable=True),
        sa.Column("earned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revocation_reason", sa.Text(), nullable=True),
        sa.Column("redemption_id", _uuid(), nullable=True),
        sa.Column("redemption_order_id", sa.String(), nullable=True),
        sa.Column("pos_group_id", sa.String(), nullable=True),
        sa.Column("pos_discount_id", sa.String(), nullable=True),
        sa.Column("pos_product_set_id", sa.String(), nullable=True),
        sa.Column("pos_pricing_rule_id", sa.String(), nullable=True),
        sa.Column("pos_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("vendor_credit_status", _enum("loyalty_vendor_credit_status"), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_loyalty_rewards_lookup", "loyalty_rewards", ["tenant_id", "offer_id", "customer_id", "status"]
    )
    op.create_index("ix_loyalty_rewards_pos_discount_id", "loyalty_rewards", ["pos_discount_id"])
    op.create_index("ix_loyalty_rewards_pos_pricing_rule_id", "loyalty_rewards", ["pos_pricing_rule_id"])
    # At most one open cycle per customer and offer.
    op.create_index(
        "uq_loyalty_rewards_open_cycle",
        "loyalty_rewards",
        ["tenant_id", "offer_id", "customer_id"],
        unique=True,
        postgresql_where=sa.text("status = 'in_progress'"),
        sqlite_where=sa.text("status = 'in_progress'"),
    )

    op.create_table(
        "loyalty_purchase_events",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), nullable=False),
        sa.Column("offer_id", _uuid(), sa.ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("location_id", sa.String(), nullable=True),
        sa.Column("variation_id", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_start_date", sa.Date(), nullable=False),
        sa.Column("window_end_date", sa.Date(), nullable=False),
        sa.Column("reward_id", _uuid(), sa.ForeignKey("loyalty_rewards.id"), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("lineage_id", _uuid(), nullable=True),
        sa.Column("split_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("split_role", _enum("loyalty_split_role"), nullable=False, server_default="original"),
        sa.Column("original_event_id", _uuid(), sa.ForeignKey("loyalty_purchase_events.id"), nullable=True),
        sa.Column("receipt_url", sa.Text(), nullable=True),
        sa.Column("customer_source", sa.String(), nullable=True),
        sa.Column("payment_type", sa.String(), nullable=True),
        sa.Column("ingested_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id",
            "idempotency_key",
            "split_sequence",
            "split_role",
            name="uq_loyalty_purchase_events_idempotency",
        ),
        sa.CheckConstraint("quantity > 0", name="ck_loyalty_purchase_events_quantity_positive"),
    )
    op.create_index(
        "ix_loyalty_purchase_events_ledger",
        "loyalty_purchase_events",
        ["tenant_id", "offer_id", "customer_id", "reward_id"],
    )
    op.create_index("ix_loyalty_purchase_events_order", "loyalty_purchase_events", ["tenant_id", "order_id"])
    op.create_index("ix_loyalty_purchase_events_reward_id", "loyalty_purchase_events", ["reward_id"])
    op.create_index(
        "ix_loyalty_purchase_events_original_event_id", "loyalty_purchase_events", ["original_event_id"]
    )

    op.create_table(
        "loyalty_redemptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), nullable=False),
        sa.Column("reward_id", _uuid(), sa.ForeignKey("loyalty_rewards.id"), nullable=False),
        sa.Column("offer_id", _uuid(), sa.ForeignKey("loyalty_offers.id"), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("redemption_type", _enum("loyalty_redemption_type"), nullable=False),
        sa.Column("detection_method", _enum("loyalty_detection_method"), nullable=True),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("location_id", sa.String(), nullable=True),
        sa.Column("redeemed_variation_id", sa.String(), nullable=True),
        sa.Column("redeemed_item_name", sa.String(), nullable=True),
        sa.Column("redeemed_variation_name", sa.String(), nullable=True),
        sa.Column("redeemed_value_cents", sa.Integer(), nullable=True),
        sa.Column("redeemed_by", sa.String(), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint("reward_id", name="uq_loyalty_redemptions_reward"),
    )
    op.create_index("ix_loyalty_redemptions_tenant_id", "loyalty_redemptions", ["tenant_id"])

    op.create_table(
        "loyalty_customer_summaries",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("offer_id", _uuid(), sa.ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("current_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("required_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("window_start_date", sa.Date(), nullable=True),
        sa.Column("window_end_date", sa.Date(), nullable=True),
        sa.Column("has_earned_reward", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("earned_reward_id", _uuid(), nullable=True),
        sa.Column("total_lifetime_purchases", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_rewards_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_rewards_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_purchase_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "customer_id", "offer_id", name="uq_loyalty_customer_summaries_key"),
    )

    op.create_table(
        "loyalty_processed_orders",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("result_type", _enum("loyalty_processed_order_result"), nullable=False, server_default="pending"),
        sa.Column("qualifying_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_line_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("source", sa.String(), nullable=False, server_default="webhook"),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("tenant_id", "order_id", name="uq_loyalty_processed_orders_tenant_order"),
    )

    op.create_table(
        "loyalty_audit_logs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("offer_id", _uuid(), nullable=True),
        sa.Column("reward_id", _uuid(), nullable=True),
        sa.Column("purchase_event_id", _uuid(), nullable=True),
        sa.Column("redemption_id", _uuid(), nullable=True),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("old_state", sa.String(), nullable=True),
        sa.Column("new_state", sa.String(), nullable=True),
        sa.Column("old_quantity", sa.Integer(), nullable=True),
        sa.Column("new_quantity", sa.Integer(), nullable=True),
        sa.Column("triggered_by", _enum("loyalty_audit_trigger"), nullable=False, server_default="SYSTEM"),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_loyalty_audit_logs_tenant_created", "loyalty_audit_logs", ["tenant_id", "created_at"])
    op.create_index("ix_loyalty_audit_logs_customer", "loyalty_audit_logs", ["tenant_id", "customer_id"])


def downgrade() -> None:
    op.drop_index("ix_loyalty_audit_logs_customer", table_name="loyalty_audit_logs")
    op.drop_index("ix_loyalty_audit_logs_tenant_created", table_name="loyalty_audit_logs")
    op.drop_table("loyalty_audit_logs")

    op.drop_table("loyalty_processed_orders")
    op.drop_table("loyalty_customer_summaries")

    op.drop_index("ix_loyalty_redemptions_tenant_id", table_name="loyalty_redemptions")
    op.drop_table("loyalty_redemptions")

    op.drop_index("ix_loyalty_purchase_events_original_event_id", table_name="loyalty_purchase_events")
    op.drop_index("ix_loyalty_purchase_events_reward_id", table_name="loyalty_purchase_events")
    op.drop_index("ix_loyalty_purchase_events_order", table_name="loyalty_purchase_events")
    op.drop_index("ix_loyalty_purchase_events_ledger", table_name="loyalty_purchase_events")
    op.drop_table("loyalty_purchase_events")

    op.drop_index("uq_loyalty_rewards_open_cycle", table_name="loyalty_rewards")
    op.drop_index("ix_loyalty_rewards_pos_pricing_rule_id", table_name="loyalty_rewards")
    op.drop_index("ix_loyalty_rewards_pos_discount_id", table_name="loyalty_rewards")
    op.drop_index("ix_loyalty_rewards_lookup", table_name="loyalty_rewards")
    op.drop_table("loyalty_rewards")

    op.drop_index("ix_loyalty_qualifying_variations_tenant_id", table_name="loyalty_qualifying_variations")
    op.drop_table("loyalty_qualifying_variations")

    op.drop_index("ix_loyalty_offers_tenant_id", table_name="loyalty_offers")
    op.drop_table("loyalty_offers")

    for name in reversed(list(ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
