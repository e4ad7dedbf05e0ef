"""State persistence layer for balances, usage and replenish attempts."""

from billing_engine.state.database import get_engine, get_session, get_session_factory
from billing_engine.state.repository import (
    BillingCustomerRepository,
    BillingEventRepository,
    CreditBalanceRepository,
    ReplenishAttemptRepository,
    UsageLogRepository,
)

__all__ = [
    "BillingCustomerRepository",
    "BillingEventRepository",
    "CreditBalanceRepository",
    "ReplenishAttemptRepository",
    "UsageLogRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
