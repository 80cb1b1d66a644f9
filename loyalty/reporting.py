"""Read-only aggregations over the ledger store. None of these take row locks."""

from typing import Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from .models import (
    AccountAudit, AccountInfo, HistoryResponse, LoyaltyStats, RedemptionRecord,
    RewardInfo, TierCount, TierDistribution, TransactionRecord,
)
from .store import Account, LedgerStore, Redemption, Reward, Transaction
from .tiers import TierTable


class ReportingQueries:
    def __init__(self, store: LedgerStore, tiers: TierTable):
        self.store = store
        self.tiers = tiers

    def history(self, session: Session, user_id: str, limit: int = 50, offset: int = 0) -> HistoryResponse:
        account = self.store.get_account(session, user_id)

        rows = session.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        ).scalars().all()

        total_count, earned, spent = session.execute(
            select(
                func.count(Transaction.id),
                func.coalesce(func.sum(case((Transaction.amount > 0, Transaction.amount), else_=0)), 0),
                func.coalesce(func.sum(case((Transaction.amount < 0, -Transaction.amount), else_=0)), 0),
            ).where(Transaction.user_id == user_id)
        ).one()

        return HistoryResponse(
            user_id=user_id,
            entries=[TransactionRecord.model_validate(r) for r in rows],
            total_count=total_count,
            current_balance=account.balance,
            total_earned=earned,
            total_spent=spent,
        )

    def redemptions(self, session: Session, user_id: str) -> list[RedemptionRecord]:
        self.store.get_account(session, user_id)
        rows = session.execute(
            select(Redemption)
            .where(Redemption.user_id == user_id)
            .order_by(Redemption.created_at.desc(), Redemption.id.desc())
        ).scalars().all()
        return [RedemptionRecord.model_validate(r) for r in rows]

    def tier_distribution(self, session: Session) -> TierDistribution:
        counts = dict(
            session.execute(
                select(Account.tier, func.count(Account.id)).group_by(Account.tier)
            ).all()
        )
        tiers = [
            TierCount(tier=t.name, threshold=t.threshold, accounts=counts.get(t.name, 0))
            for t in self.tiers
        ]
        return TierDistribution(tiers=tiers, total_accounts=sum(counts.values()))

    def stats(self, session: Session) -> LoyaltyStats:
        total_accounts, circulation, issued = session.execute(
            select(
                func.count(Account.id),
                func.coalesce(func.sum(Account.balance), 0),
                func.coalesce(func.sum(Account.lifetime_points), 0),
            )
        ).one()
        total_redemptions = session.execute(select(func.count(Redemption.id))).scalar_one()
        return LoyaltyStats(
            total_accounts=total_accounts,
            points_in_circulation=circulation,
            lifetime_points_issued=issued,
            total_redemptions=total_redemptions,
        )

    def search_accounts(self, session: Session, term: str = "", limit: int = 50) -> list[AccountInfo]:
        escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        rows = session.execute(
            select(Account)
            .where(or_(
                Account.name.ilike(pattern, escape="\\"),
                Account.email.ilike(pattern, escape="\\"),
                Account.member_id.ilike(pattern, escape="\\"),
            ))
            .order_by(Account.created_at.desc())
            .limit(limit)
        ).scalars().all()
        return [AccountInfo.model_validate(r) for r in rows]

    def active_rewards(self, session: Session, category: Optional[str] = None) -> list[RewardInfo]:
        query = select(Reward).where(Reward.active.is_(True))
        if category:
            query = query.where(Reward.category == category)
        rows = session.execute(query.order_by(Reward.points_cost.asc(), Reward.id.asc())).scalars().all()
        return [RewardInfo.model_validate(r) for r in rows]

    def audit(self, session: Session, user_id: str) -> AccountAudit:
        account = self.store.get_account(session, user_id)
        ledger_balance, count = session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0), func.count(Transaction.id))
            .where(Transaction.user_id == user_id)
        ).one()
        return AccountAudit(
            user_id=user_id,
            cached_balance=account.balance,
            ledger_balance=ledger_balance,
            cached_tier=account.tier,
            derived_tier=self.tiers.derive(account.lifetime_points).name,
            transaction_count=count,
        )
