"""
Loyalty Points and Tier Engine

This module provides:
- Point balances with an append-only transaction ledger
- Reward tiers derived from lifetime points
- Atomic earn, spend, redeem and admin adjustment flows
- Read-only reporting over the ledger
"""

from .errors import (
    LoyaltyError,
    AccountNotFoundError,
    AccountExistsError,
    InvalidAmountError,
    InsufficientBalanceError,
    RewardUnavailableError,
    UnauthorizedError,
    StoreUnavailableError,
    TierConfigurationError,
)
from .models import TransactionKind, Caller, CallerRole
from .tiers import TierDefinition, TierTable, DEFAULT_TIERS
from .store import LedgerStore
from .engine import BalanceDelta, BalanceEngine
from .redemption import RedemptionService
from .service import LoyaltyService

__all__ = [
    "LoyaltyError",
    "AccountNotFoundError",
    "AccountExistsError",
    "InvalidAmountError",
    "InsufficientBalanceError",
    "RewardUnavailableError",
    "UnauthorizedError",
    "StoreUnavailableError",
    "TierConfigurationError",
    "TransactionKind",
    "Caller",
    "CallerRole",
    "TierDefinition",
    "TierTable",
    "DEFAULT_TIERS",
    "LedgerStore",
    "BalanceDelta",
    "BalanceEngine",
    "RedemptionService",
    "LoyaltyService",
]
