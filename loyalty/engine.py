"""
Balance Engine

The only code path that changes an account's balance, lifetime points or
tier, and the only one that appends to the transaction log. Callers describe
the change as a BalanceDelta and the engine applies it inside the session
they hand in, so composite operations (redemption) share one atomic unit.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from .errors import InsufficientBalanceError, InvalidAmountError
from .models import TransactionKind
from .store import Account, LedgerStore, Transaction
from .tiers import TierTable

logger = logging.getLogger(__name__)


def _validate_amount(amount) -> int:
    # bool is an int subclass; True is not a point amount.
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError(f"Amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise InvalidAmountError(f"Amount must be positive, got {amount}")
    return amount


@dataclass(frozen=True)
class BalanceDelta:
    """
    A tagged balance change. Direction comes from the kind (and, for admin
    adjustments, from the debit flag), never from the sign of amount.
    """
    kind: TransactionKind
    amount: int
    description: str
    debit: bool
    admin_id: Optional[str] = None
    apply_tier_multiplier: bool = False

    @classmethod
    def earn(cls, amount: int, description: str) -> "BalanceDelta":
        return cls(TransactionKind.EARN, _validate_amount(amount), description, debit=False)

    @classmethod
    def purchase(cls, base_points: int, description: str) -> "BalanceDelta":
        return cls(TransactionKind.EARN, _validate_amount(base_points), description,
                   debit=False, apply_tier_multiplier=True)

    @classmethod
    def spend(cls, amount: int, description: str) -> "BalanceDelta":
        return cls(TransactionKind.SPEND, _validate_amount(amount), description, debit=True)

    @classmethod
    def admin_adjust(cls, signed_amount: int, description: str,
                     admin_id: Optional[str] = None) -> "BalanceDelta":
        if isinstance(signed_amount, bool) or not isinstance(signed_amount, int):
            raise InvalidAmountError(f"Amount must be an integer, got {signed_amount!r}")
        if signed_amount == 0:
            raise InvalidAmountError("Adjustment amount cannot be 0")
        return cls(TransactionKind.ADMIN_ADJUST, abs(signed_amount), description,
                   debit=signed_amount < 0, admin_id=admin_id)


@dataclass(frozen=True)
class DeltaResult:
    account: Account
    transaction: Transaction
    previous_tier: str

    @property
    def promoted(self) -> bool:
        return self.account.tier != self.previous_tier


class BalanceEngine:
    def __init__(self, store: LedgerStore, tiers: TierTable):
        self.store = store
        self.tiers = tiers

    def apply_delta(self, session: Session, user_id: str, delta: BalanceDelta) -> DeltaResult:
        """
        Lock the account row, compute the new balance/lifetime/tier, write the
        row and append one Transaction, all inside ``session``'s transaction.

        Raises AccountNotFoundError, InvalidAmountError or
        InsufficientBalanceError before anything is written.
        """
        # Re-validate: a hand-built BalanceDelta skips the constructors.
        amount = _validate_amount(delta.amount)
        account = self.store.get_account(session, user_id, for_update=True)
        previous_tier = account.tier

        if delta.apply_tier_multiplier:
            multiplier = self.tiers.derive(account.lifetime_points).multiplier
            amount = math.floor(amount * multiplier)
            if amount <= 0:
                raise InvalidAmountError(
                    f"{delta.amount} points at x{multiplier} rounds down to nothing"
                )

        if delta.debit:
            if account.balance < amount:
                logger.warning(
                    "Rejected %s of %d for %s: balance %d",
                    delta.kind.value, amount, user_id, account.balance,
                )
                raise InsufficientBalanceError(account.balance, amount)
            account.balance -= amount
            signed_amount = -amount
        else:
            account.balance += amount
            account.lifetime_points += amount
            account.tier = self.tiers.derive(account.lifetime_points).name
            signed_amount = amount

        entry = Transaction(
            user_id=account.id,
            kind=delta.kind.value,
            amount=signed_amount,
            balance_after=account.balance,
            description=delta.description,
            admin_id=delta.admin_id,
        )
        session.add(entry)
        session.flush()

        logger.info(
            "Applied %s %+d to %s: balance=%d lifetime=%d tier=%s",
            delta.kind.value, signed_amount, account.id,
            account.balance, account.lifetime_points, account.tier,
        )
        if account.tier != previous_tier:
            logger.info("Account %s promoted %s -> %s", account.id, previous_tier, account.tier)

        return DeltaResult(account=account, transaction=entry, previous_tier=previous_tier)
