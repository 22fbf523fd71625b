"""Loyalty job exports."""

from .expiration import run_earned_reward_expiration, run_window_expiration  # noqa: F401
from .reconciliation import run_reward_sync_reconciliation  # noqa: F401

__all__ = [
    "run_earned_reward_expiration",
    "run_reward_sync_reconciliation",
    "run_window_expiration",
]
