import logging
from typing import Optional

from .engine import BalanceDelta, BalanceEngine, DeltaResult
from .errors import UnauthorizedError
from .models import (
    AccountAudit, AccountInfo, BalanceResponse, Caller, HistoryResponse,
    LoyaltyStats, MutationResponse, RedeemResponse, RedemptionRecord,
    RegisterAccountRequest, RewardInfo, TierDistribution, TierInfo, TierProgress,
    TransactionRecord,
)
from .redemption import RedemptionService
from .reporting import ReportingQueries
from .store import Account, LedgerStore
from .tiers import TierTable

logger = logging.getLogger(__name__)


def _balance(account: Account) -> dict:
    return {
        "user_id": account.id,
        "balance": account.balance,
        "lifetime_points": account.lifetime_points,
        "tier": account.tier,
    }


def _tier_info(tier) -> TierInfo:
    return TierInfo(name=tier.name, threshold=tier.threshold,
                    multiplier=tier.multiplier, color=tier.color)


class LoyaltyService:
    """
    Entry point for calling code. Each public method runs in exactly one
    store transaction; business failures raise LoyaltyError subclasses.
    """

    def __init__(self, store: Optional[LedgerStore] = None, tiers: Optional[TierTable] = None):
        if store is None or tiers is None:
            from .config import get_settings
            settings = get_settings()
            store = store or LedgerStore()
            tiers = tiers or settings.tier_table()
        self.store = store
        self.tiers = tiers
        self.engine = BalanceEngine(store, tiers)
        self.redemptions = RedemptionService(self.engine)
        self.reports = ReportingQueries(store, tiers)

    # Accounts

    def register_account(self, request: RegisterAccountRequest) -> AccountInfo:
        with self.store.transaction() as session:
            account = self.store.create_account(
                session, request.email.strip().lower(), request.name, self.tiers.floor.name
            )
            return AccountInfo.model_validate(account)

    def get_account(self, user_id: str) -> AccountInfo:
        with self.store.transaction(write=False) as session:
            return AccountInfo.model_validate(self.store.get_account(session, user_id))

    def get_account_by_member_id(self, member_id: str) -> AccountInfo:
        with self.store.transaction(write=False) as session:
            return AccountInfo.model_validate(self.store.get_account_by_member_id(session, member_id))

    def get_balance(self, user_id: str) -> BalanceResponse:
        with self.store.transaction(write=False) as session:
            return BalanceResponse(**_balance(self.store.get_account(session, user_id)))

    def get_tier_progress(self, user_id: str) -> TierProgress:
        with self.store.transaction(write=False) as session:
            account = self.store.get_account(session, user_id)
            lifetime = account.lifetime_points

        upcoming = self.tiers.next_tier(lifetime)
        return TierProgress(
            user_id=user_id,
            lifetime_points=lifetime,
            current_tier=_tier_info(self.tiers.derive(lifetime)),
            next_tier=_tier_info(upcoming) if upcoming else None,
            points_to_next_tier=upcoming.threshold - lifetime if upcoming else None,
        )

    # Mutations

    def earn(self, user_id: str, amount: int, description: str = "Points earned") -> MutationResponse:
        return self._apply(user_id, BalanceDelta.earn(amount, description))

    def award_purchase_points(self, user_id: str, base_points: int,
                              description: str = "Purchase") -> MutationResponse:
        return self._apply(user_id, BalanceDelta.purchase(base_points, description))

    def spend(self, user_id: str, amount: int, description: str = "Points spent") -> MutationResponse:
        return self._apply(user_id, BalanceDelta.spend(amount, description))

    def admin_adjust(self, caller: Caller, user_id: str, signed_amount: int,
                     description: str) -> MutationResponse:
        if not caller.is_admin:
            raise UnauthorizedError("Balance adjustments require an administrator")
        delta = BalanceDelta.admin_adjust(signed_amount, description, admin_id=caller.user_id)
        response = self._apply(user_id, delta)
        logger.info("Admin %s adjusted %s by %+d", caller.user_id, user_id, signed_amount)
        return response

    def redeem(self, user_id: str, reward_id: int) -> RedeemResponse:
        with self.store.transaction() as session:
            result, redemption = self.redemptions.redeem(session, user_id, reward_id)
            return RedeemResponse(
                **_balance(result.account),
                redemption=RedemptionRecord.model_validate(redemption),
                transaction=TransactionRecord.model_validate(result.transaction),
            )

    def _apply(self, user_id: str, delta: BalanceDelta) -> MutationResponse:
        with self.store.transaction() as session:
            result = self.engine.apply_delta(session, user_id, delta)
            return self._mutation_response(result)

    @staticmethod
    def _mutation_response(result: DeltaResult) -> MutationResponse:
        return MutationResponse(
            **_balance(result.account),
            transaction=TransactionRecord.model_validate(result.transaction),
            promoted=result.promoted,
        )

    # Read-only

    def get_history(self, user_id: str, limit: int = 50, offset: int = 0) -> HistoryResponse:
        with self.store.transaction(write=False) as session:
            return self.reports.history(session, user_id, limit, offset)

    def get_redemptions(self, user_id: str) -> list[RedemptionRecord]:
        with self.store.transaction(write=False) as session:
            return self.reports.redemptions(session, user_id)

    def get_tier_distribution(self) -> TierDistribution:
        with self.store.transaction(write=False) as session:
            return self.reports.tier_distribution(session)

    def get_stats(self) -> LoyaltyStats:
        with self.store.transaction(write=False) as session:
            return self.reports.stats(session)

    def search_accounts(self, term: str = "", limit: int = 50) -> list[AccountInfo]:
        with self.store.transaction(write=False) as session:
            return self.reports.search_accounts(session, term, limit)

    def list_rewards(self, category: Optional[str] = None) -> list[RewardInfo]:
        with self.store.transaction(write=False) as session:
            return self.reports.active_rewards(session, category)

    def list_tiers(self) -> list[TierInfo]:
        return [_tier_info(t) for t in self.tiers]

    def audit_account(self, user_id: str) -> AccountAudit:
        with self.store.transaction(write=False) as session:
            return self.reports.audit(session, user_id)
