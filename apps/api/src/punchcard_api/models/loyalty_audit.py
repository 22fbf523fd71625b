"""Append-only audit trail for loyalty state transitions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Enum as SqlEnum, Index, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID

from punchcard_api.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditAction(str, Enum):
    """Canonical names for every audited loyalty transition."""

    OFFER_CREATED = "OFFER_CREATED"
    OFFER_UPDATED = "OFFER_UPDATED"
    OFFER_DEACTIVATED = "OFFER_DEACTIVATED"
    OFFER_DELETED = "OFFER_DELETED"
    VARIATION_ADDED = "VARIATION_ADDED"
    VARIATION_REMOVED = "VARIATION_REMOVED"
    PURCHASE_RECORDED = "PURCHASE_RECORDED"
    REFUND_PROCESSED = "REFUND_PROCESSED"
    WINDOW_EXPIRED = "WINDOW_EXPIRED"
    REWARD_PROGRESS_UPDATED = "REWARD_PROGRESS_UPDATED"
    REWARD_EARNED = "REWARD_EARNED"
    REWARD_REDEEMED = "REWARD_REDEEMED"
    REWARD_REVOKED = "REWARD_REVOKED"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"


class AuditTrigger(str, Enum):
    SYSTEM = "SYSTEM"
    WEBHOOK = "WEBHOOK"
    ADMIN = "ADMIN"
    EXPIRATION_CLEANUP = "EXPIRATION_CLEANUP"
    BACKFILL = "BACKFILL"


class LoyaltyAuditLog(Base):
    """Immutable record of one transition. Rows are never updated or deleted."""

    __tablename__ = "loyalty_audit_logs"
    __table_args__ = (
        Index("ix_loyalty_audit_logs_tenant_created", "tenant_id", "created_at"),
        Index("ix_loyalty_audit_logs_customer", "tenant_id", "customer_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    action = Column(String, nullable=False)
    offer_id = Column(UUID(as_uuid=True), nullable=True)
    reward_id = Column(UUID(as_uuid=True), nullable=True)
    purchase_event_id = Column(UUID(as_uuid=True), nullable=True)
    redemption_id = Column(UUID(as_uuid=True), nullable=True)
    customer_id = Column(String, nullable=True)
    order_id = Column(String, nullable=True)
    old_state = Column(String, nullable=True)
    new_state = Column(String, nullable=True)
    old_quantity = Column(Integer, nullable=True)
    new_quantity = Column(Integer, nullable=True)
    triggered_by = Column(
        SqlEnum(AuditTrigger, name="loyalty_audit_trigger", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=AuditTrigger.SYSTEM,
    )
    actor_id = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
