"""Subscription domain services."""

from .service import ALLOWED_TRANSITIONS, MonthlyAllocationResult, SubscriptionService

__all__ = ["ALLOWED_TRANSITIONS", "MonthlyAllocationResult", "SubscriptionService"]
