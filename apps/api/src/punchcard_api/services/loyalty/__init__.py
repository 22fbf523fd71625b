"""Loyalty punch-card service exports."""

from .audit import AuditLogService, AuditPage  # noqa: F401
from .detection import DetectionResult, RedemptionDetector  # noqa: F401
from .errors import (  # noqa: F401
    ExternalSyncError,
    LoyaltyError,
    LoyaltyNotFoundError,
    LoyaltyValidationError,
    RewardStateConflictError,
)
from .expiration import EarnedExpirationResult, ExpirationSweeper, WindowExpirationResult  # noqa: F401
from .intake import IntakeLineResult, IntakeResult, OrderIntakeService  # noqa: F401
from .ledger import ProgressLedger, ProgressResult, PurchaseOutcome, SplitResult  # noqa: F401
from .payloads import NormalizedOrder, normalize_order  # noqa: F401
from .pos_client import PosApiError, PosAutomationClient, default_pos_client_factory  # noqa: F401
from .queries import CustomerOfferSummary, LoyaltyQueryService, RewardDetail  # noqa: F401
from .rewards import RedemptionOutcome, RevocationOutcome, RewardStateMachine  # noqa: F401
from .sync import RewardSyncOrchestrator, RewardValidation, SyncIssue, SyncOutcome  # noqa: F401
