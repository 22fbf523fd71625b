"""Typed failures raised by the loyalty services."""

from __future__ import annotations

from uuid import UUID


class LoyaltyError(RuntimeError):
    """Base exception for loyalty accrual and redemption failures."""


class LoyaltyValidationError(LoyaltyError):
    """Raised when a required identifier is missing; nothing has been written."""

    def __init__(self, field: str, message: str | None = None) -> None:
        super().__init__(message or f"{field} is required")
        self.field = field


class LoyaltyNotFoundError(LoyaltyError):
    """Raised when a referenced offer or reward does not exist for the tenant."""

    def __init__(self, entity: str, entity_id: UUID | str) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class RewardStateConflictError(LoyaltyError):
    """Raised when a reward transition is not valid for its current state."""

    def __init__(self, reward_id: UUID, message: str, *, current_status: str | None = None) -> None:
        super().__init__(message)
        self.reward_id = reward_id
        self.current_status = current_status


class ExternalSyncError(LoyaltyError):
    """Raised when the POS automation objects cannot be created, removed or verified."""

    def __init__(self, step: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step
        self.status_code = status_code


__all__ = [
    "ExternalSyncError",
    "LoyaltyError",
    "LoyaltyNotFoundError",
    "LoyaltyValidationError",
    "RewardStateConflictError",
]
