import logging

from sqlalchemy.orm import Session

from .engine import BalanceDelta, BalanceEngine, DeltaResult
from .errors import RewardUnavailableError
from .store import Redemption


logger = logging.getLogger(__name__)


class RedemptionService:
    """Validates a reward and turns it into a spend debit plus a Redemption row."""

    def __init__(self, engine: BalanceEngine):
        self.engine = engine

    def redeem(self, session: Session, user_id: str, reward_id: int) -> tuple[DeltaResult, Redemption]:
        reward = self.engine.store.get_reward(session, reward_id)
        if reward is None or not reward.active:
            raise RewardUnavailableError(f"Reward {reward_id} is not available")

        cost = reward.points_cost
        result = self.engine.apply_delta(
            session, user_id, BalanceDelta.spend(cost, f"Redeemed: {reward.name}")
        )

        redemption = Redemption(
            user_id=result.account.id,
            reward_id=reward.id,
            transaction_id=result.transaction.id,
            points_spent=cost,
        )
        session.add(redemption)
        session.flush()

        logger.info("Account %s redeemed reward %s for %d points", user_id, reward.id, cost)
        return result, redemption
