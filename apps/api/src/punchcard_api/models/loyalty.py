"""Loyalty punch-card domain models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from punchcard_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class RewardStatus(str, Enum):
    """Lifecycle statuses for a reward cycle.

    ``NO_PROGRESS`` is only ever reported by the ledger; it is never persisted.
    """

    NO_PROGRESS = "no_progress"
    IN_PROGRESS = "in_progress"
    EARNED = "earned"
    REDEEMED = "redeemed"
    REVOKED = "revoked"


class SplitRole(str, Enum):
    """Position of a purchase event within its split lineage."""

    ORIGINAL = "original"
    LOCKED = "locked"
    EXCESS = "excess"


class RedemptionType(str, Enum):
    ORDER_DISCOUNT = "order_discount"
    MANUAL_ADMIN = "manual_admin"
    AUTO_DETECTED = "auto_detected"


class DetectionMethod(str, Enum):
    CATALOG_OBJECT_ID = "catalog_object_id"
    FREE_ITEM_FALLBACK = "free_item_fallback"
    DISCOUNT_AMOUNT_FALLBACK = "discount_amount_fallback"


class VendorCreditStatus(str, Enum):
    NOT_SUBMITTED = "not_submitted"
    SUBMITTED = "submitted"
    CREDITED = "credited"
    DENIED = "denied"


class ProcessedOrderResult(str, Enum):
    PENDING = "pending"
    QUALIFYING = "qualifying"
    NON_QUALIFYING = "non_qualifying"
    NO_CUSTOMER = "no_customer"
    NO_LINE_ITEMS = "no_line_items"


class LoyaltyOffer(Base):
    """Tenant-defined "buy N, get one free" program."""

    __tablename__ = "loyalty_offers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "brand_name", "size_group", name="uq_loyalty_offers_tenant_brand_size"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String, nullable=False)
    brand_name = Column(String, nullable=False)
    size_group = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    required_quantity = Column(Integer, nullable=False)
    window_months = Column(Integer, nullable=False, default=12, server_default="12")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    qualifying_variations = relationship(
        "LoyaltyQualifyingVariation", back_populates="offer", cascade="all, delete-orphan"
    )


class LoyaltyQualifyingVariation(Base):
    """Catalog variation that counts toward an offer, supplied by the catalog collaborator."""

    __tablename__ = "loyalty_qualifying_variations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "variation_id", name="uq_loyalty_qualifying_variations_tenant_variation"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False)
    variation_id = Column(String, nullable=False)
    item_name = Column(String, nullable=True)
    variation_name = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    offer = relationship("LoyaltyOffer", back_populates="qualifying_variations")


class LoyaltyPurchaseEvent(Base):
    """One quantity-bearing slice of a purchase, lockable to exactly one reward.

    Split lineage is tracked structurally: every row keeps the source idempotency key,
    ``lineage_id`` points at the root event, ``split_sequence`` counts generations and
    ``split_role`` tells locked and excess children apart. A row that has children is
    superseded and ignored by every ledger computation.
    """

    __tablename__ = "loyalty_purchase_events"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "idempotency_key",
            "split_sequence",
            "split_role",
            name="uq_loyalty_purchase_events_idempotency",
        ),
        Index("ix_loyalty_purchase_events_ledger", "tenant_id", "offer_id", "customer_id", "reward_id"),
        Index("ix_loyalty_purchase_events_order", "tenant_id", "order_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False)
    customer_id = Column(String, nullable=False)
    order_id = Column(String, nullable=True)
    location_id = Column(String, nullable=True)
    variation_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False, default=0, server_default="0")
    purchased_at = Column(DateTime(timezone=True), nullable=False)
    window_start_date = Column(Date, nullable=False)
    window_end_date = Column(Date, nullable=False)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_rewards.id"), nullable=True, index=True)
    idempotency_key = Column(String, nullable=False)
    lineage_id = Column(UUID(as_uuid=True), nullable=True)
    split_sequence = Column(Integer, nullable=False, default=0, server_default="0")
    split_role = Column(
        SqlEnum(SplitRole, name="loyalty_split_role", values_callable=_enum_values),
        nullable=False,
        default=SplitRole.ORIGINAL,
        server_default=SplitRole.ORIGINAL.value,
    )
    original_event_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_purchase_events.id"), nullable=True, index=True
    )
    receipt_url = Column(Text, nullable=True)
    customer_source = Column(String, nullable=True)
    payment_type = Column(String, nullable=True)
    # Ordering tie-break for rows sharing ``purchased_at``; split children inherit it.
    ingested_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    offer = relationship("LoyaltyOffer")
    reward = relationship("LoyaltyReward", back_populates="locked_events", foreign_keys=[reward_id])


class LoyaltyReward(Base):
    """One accrual and redemption cycle for a (customer, offer) pair."""

    __tablename__ = "loyalty_rewards"
    __table_args__ = (
        Index("ix_loyalty_rewards_lookup", "tenant_id", "offer_id", "customer_id", "status"),
        # At most one open cycle per customer and offer.
        Index(
            "uq_loyalty_rewards_open_cycle",
            "tenant_id",
            "offer_id",
            "customer_id",
            unique=True,
            postgresql_where=text("status = 'in_progress'"),
            sqlite_where=text("status = 'in_progress'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False)
    customer_id = Column(String, nullable=False)
    status = Column(
        SqlEnum(RewardStatus, name="loyalty_reward_status", values_callable=_enum_values),
        nullable=False,
        default=RewardStatus.IN_PROGRESS,
        server_default=RewardStatus.IN_PROGRESS.value,
    )
    current_quantity = Column(Integer, nullable=False, default=0, server_default="0")
    required_quantity = Column(Integer, nullable=False)
    window_start_date = Column(Date, nullable=True)
    window_end_date = Column(Date, nullable=True)
    earned_at = Column(DateTime(timezone=True), nullable=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revocation_reason = Column(Text, nullable=True)
    redemption_id = Column(UUID(as_uuid=True), nullable=True)
    redemption_order_id = Column(String, nullable=True)
    pos_group_id = Column(String, nullable=True)
    pos_discount_id = Column(String, nullable=True, index=True)
    pos_product_set_id = Column(String, nullable=True)
    pos_pricing_rule_id = Column(String, nullable=True, index=True)
    pos_synced_at = Column(DateTime(timezone=True), nullable=True)
    vendor_credit_status = Column(
        SqlEnum(VendorCreditStatus, name="loyalty_vendor_credit_status", values_callable=_enum_values),
        nullable=True,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    offer = relationship("LoyaltyOffer")
    locked_events = relationship(
        "LoyaltyPurchaseEvent", back_populates="reward", foreign_keys="LoyaltyPurchaseEvent.reward_id"
    )

    @property
    def pos_object_ids(self) -> dict[str, str | None]:
        return {
            "group_id": self.pos_group_id,
            "discount_id": self.pos_discount_id,
            "product_set_id": self.pos_product_set_id,
            "pricing_rule_id": self.pos_pricing_rule_id,
        }


class LoyaltyRedemption(Base):
    """Immutable record of a reward spent at checkout."""

    __tablename__ = "loyalty_redemptions"
    __table_args__ = (
        UniqueConstraint("reward_id", name="uq_loyalty_redemptions_reward"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_rewards.id"), nullable=False)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id"), nullable=False)
    customer_id = Column(String, nullable=False)
    redemption_type = Column(
        SqlEnum(RedemptionType, name="loyalty_redemption_type", values_callable=_enum_values),
        nullable=False,
    )
    detection_method = Column(
        SqlEnum(DetectionMethod, name="loyalty_detection_method", values_callable=_enum_values),
        nullable=True,
    )
    order_id = Column(String, nullable=True)
    location_id = Column(String, nullable=True)
    redeemed_variation_id = Column(String, nullable=True)
    redeemed_item_name = Column(String, nullable=True)
    redeemed_variation_name = Column(String, nullable=True)
    redeemed_value_cents = Column(Integer, nullable=True)
    redeemed_by = Column(String, nullable=True)
    admin_notes = Column(Text, nullable=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class LoyaltyCustomerSummary(Base):
    """Denormalized per-customer progress cache, rebuilt from the ledger."""

    __tablename__ = "loyalty_customer_summaries"
    __table_args__ = (
        UniqueConstraint("tenant_id", "customer_id", "offer_id", name="uq_loyalty_customer_summaries_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    customer_id = Column(String, nullable=False)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False)
    current_quantity = Column(Integer, nullable=False, default=0, server_default="0")
    required_quantity = Column(Integer, nullable=False, default=0, server_default="0")
    window_start_date = Column(Date, nullable=True)
    window_end_date = Column(Date, nullable=True)
    has_earned_reward = Column(Boolean, nullable=False, default=False, server_default="false")
    earned_reward_id = Column(UUID(as_uuid=True), nullable=True)
    total_lifetime_purchases = Column(Integer, nullable=False, default=0, server_default="0")
    total_rewards_earned = Column(Integer, nullable=False, default=0, server_default="0")
    total_rewards_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    last_purchase_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class LoyaltyProcessedOrder(Base):
    """Intake claim for one order; the unique key makes re-delivery a no-op."""

    __tablename__ = "loyalty_processed_orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "order_id", name="uq_loyalty_processed_orders_tenant_order"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    order_id = Column(String, nullable=False)
    customer_id = Column(String, nullable=True)
    result_type = Column(
        SqlEnum(ProcessedOrderResult, name="loyalty_processed_order_result", values_callable=_enum_values),
        nullable=False,
        default=ProcessedOrderResult.PENDING,
    )
    qualifying_items = Column(Integer, nullable=False, default=0, server_default="0")
    total_line_items = Column(Integer, nullable=False, default=0, server_default="0")
    source = Column(String, nullable=False, default="webhook")
    processed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
