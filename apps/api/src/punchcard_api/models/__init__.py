"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    DetectionMethod,
    LoyaltyCustomerSummary,
    LoyaltyOffer,
    LoyaltyProcessedOrder,
    LoyaltyPurchaseEvent,
    LoyaltyQualifyingVariation,
    LoyaltyRedemption,
    LoyaltyReward,
    ProcessedOrderResult,
    RedemptionType,
    RewardStatus,
    SplitRole,
    VendorCreditStatus,
)
from .loyalty_audit import AuditAction, AuditTrigger, LoyaltyAuditLog  # noqa: F401
