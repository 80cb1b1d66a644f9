from typing import Optional


class LoyaltyError(Exception):
    code = "LOYALTY_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AccountNotFoundError(LoyaltyError):
    code = "NOT_FOUND"


class AccountExistsError(LoyaltyError):
    code = "ACCOUNT_EXISTS"


class InvalidAmountError(LoyaltyError):
    code = "INVALID_AMOUNT"


class InsufficientBalanceError(LoyaltyError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, balance: int, requested: int, message: Optional[str] = None):
        self.balance = balance
        self.requested = requested
        super().__init__(
            message or f"Insufficient balance: requested {requested}, available {balance}"
        )


class RewardUnavailableError(LoyaltyError):
    code = "REWARD_UNAVAILABLE"


class UnauthorizedError(LoyaltyError):
    code = "UNAUTHORIZED"


class StoreUnavailableError(LoyaltyError):
    code = "STORE_UNAVAILABLE"


class TierConfigurationError(LoyaltyError):
    code = "TIER_CONFIGURATION"
