import logging
import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .errors import (
    AccountExistsError, AccountNotFoundError, InsufficientBalanceError,
    InvalidAmountError, LoyaltyError, RewardUnavailableError,
    StoreUnavailableError, UnauthorizedError,
)
from .models import (
    AccountAudit, AccountInfo, AdminAdjustRequest, BalanceResponse, Caller,
    CallerRole, EarnRequest, HistoryResponse, LoyaltyStats, MutationResponse,
    PurchaseRequest, RedeemRequest, RedeemResponse, RedemptionRecord,
    RegisterAccountRequest, RewardInfo, SpendRequest, TierDistribution,
    TierInfo, TierProgress,
)
from .service import LoyaltyService

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    AccountNotFoundError: status.HTTP_404_NOT_FOUND,
    AccountExistsError: status.HTTP_409_CONFLICT,
    InvalidAmountError: status.HTTP_400_BAD_REQUEST,
    InsufficientBalanceError: status.HTTP_409_CONFLICT,
    RewardUnavailableError: status.HTTP_409_CONFLICT,
    UnauthorizedError: status.HTTP_403_FORBIDDEN,
    StoreUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}

_service: Optional[LoyaltyService] = None
_service_lock = threading.Lock()


def get_service() -> LoyaltyService:
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                settings = get_settings()
                service = LoyaltyService(tiers=settings.tier_table())
                if settings.seed_rewards:
                    service.store.seed_default_rewards()
                _service = service
    return _service


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    logger.info("Loyalty ledger starting with %s", settings.database_url.split("@")[-1])
    yield


app = FastAPI(
    title="Loyalty Points API",
    description="Points balances, reward tiers and redemptions over an append-only ledger",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_caller(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: CallerRole = Header(default=CallerRole.MEMBER),
) -> Caller:
    # Identity is asserted by the gateway in front of this service.
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller identity")
    return Caller(user_id=x_user_id, role=x_user_role)


def _http_error(e: LoyaltyError) -> HTTPException:
    code = ERROR_STATUS.get(type(e), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=code, detail={"code": e.code, "message": e.message})


def _require_owner_or_admin(caller: Caller, user_id: str) -> None:
    if caller.user_id != user_id and not caller.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed for this account")


def _require_role(caller: Caller, *roles: CallerRole) -> None:
    if caller.role not in roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "loyalty-ledger"}


@app.get("/tiers", response_model=list[TierInfo], tags=["Catalog"])
def list_tiers(service: LoyaltyService = Depends(get_service)):
    return service.list_tiers()


@app.get("/rewards", response_model=list[RewardInfo], tags=["Catalog"])
def list_rewards(category: Optional[str] = None, service: LoyaltyService = Depends(get_service)):
    try:
        return service.list_rewards(category)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/accounts", response_model=AccountInfo, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def register_account(request: RegisterAccountRequest, service: LoyaltyService = Depends(get_service)):
    try:
        return service.register_account(request)
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/accounts", response_model=list[AccountInfo], tags=["Accounts"])
def search_accounts(
    q: str = "",
    limit: int = Query(default=50, ge=1, le=500),
    caller: Caller = Depends(get_caller),
    service: LoyaltyService = Depends(get_service),
):
    _require_role(caller, CallerRole.ADMIN)
    try:
        return service.search_accounts(q, limit)
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/accounts/{user_id}", response_model=AccountInfo, tags=["Accounts"])
def get_account(user_id: str, caller: Caller = Depends(get_caller),
                service: LoyaltyService = Depends(get_service)):
    _require_owner_or_admin(caller, user_id)
    try:
        return service.get_account(user_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/accounts/{user_id}/balance", response_model=BalanceResponse, tags=["Accounts"])
def get_balance(user_id: str, caller: Caller = Depends(get_caller),
                service: LoyaltyService = Depends(get_service)):
    _require_owner_or_admin(caller, user_id)
    try:
        return service.get_balance(user_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/accounts/{user_id}/history", response_model=HistoryResponse, tags=["Accounts"])
def get_history(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(get_caller),
    service: LoyaltyService = Depends(get_service),
):
    _require_owner_or_admin(caller, user_id)
    try:
        return service.get_history(user_id, limit, offset)
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/accounts/{user_id}/tier-progress", response_model=TierProgress, tags=["Accounts"])
def get_tier_progress(user_id: str, caller: Caller = Depends(get_caller),
                      service: LoyaltyService = Depends(get_service)):
    _require_owner_or_admin(caller, user_id)
    try:
        return service.get_tier_progress(user_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/accounts/{user_id}/redemptions", response_model=list[RedemptionRecord], tags=["Accounts"])
def get_redemptions(user_id: str, caller: Caller = Depends(get_caller),
                    service: LoyaltyService = Depends(get_service)):
    _require_owner_or_admin(caller, user_id)
    try:
        return service.get_redemptions(user_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/accounts/{user_id}/audit", response_model=AccountAudit, tags=["Admin"])
def audit_account(user_id: str, caller: Caller = Depends(get_caller),
                  service: LoyaltyService = Depends(get_service)):
    _require_role(caller, CallerRole.ADMIN)
    try:
        return service.audit_account(user_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/accounts/{user_id}/earn", response_model=MutationResponse, tags=["Points"])
def earn(user_id: str, request: EarnRequest, caller: Caller = Depends(get_caller),
         service: LoyaltyService = Depends(get_service)):
    _require_role(caller, CallerRole.SERVICE, CallerRole.ADMIN)
    try:
        return service.earn(user_id, request.amount, request.description)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/accounts/{user_id}/purchases", response_model=MutationResponse, tags=["Points"])
def award_purchase(user_id: str, request: PurchaseRequest, caller: Caller = Depends(get_caller),
                   service: LoyaltyService = Depends(get_service)):
    _require_role(caller, CallerRole.SERVICE, CallerRole.ADMIN)
    try:
        return service.award_purchase_points(user_id, request.base_points, request.description)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/accounts/{user_id}/spend", response_model=MutationResponse, tags=["Points"])
def spend(user_id: str, request: SpendRequest, caller: Caller = Depends(get_caller),
          service: LoyaltyService = Depends(get_service)):
    _require_owner_or_admin(caller, user_id)
    try:
        return service.spend(user_id, request.amount, request.description)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/accounts/{user_id}/redeem", response_model=RedeemResponse, tags=["Points"])
def redeem(user_id: str, request: RedeemRequest, caller: Caller = Depends(get_caller),
           service: LoyaltyService = Depends(get_service)):
    _require_owner_or_admin(caller, user_id)
    try:
        return service.redeem(user_id, request.reward_id)
    except LoyaltyError as e:
        raise _http_error(e)


@app.post("/accounts/{user_id}/adjust", response_model=MutationResponse, tags=["Admin"])
def admin_adjust(user_id: str, request: AdminAdjustRequest, caller: Caller = Depends(get_caller),
                 service: LoyaltyService = Depends(get_service)):
    try:
        return service.admin_adjust(caller, user_id, request.amount, request.description)
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/reports/tier-distribution", response_model=TierDistribution, tags=["Reports"])
def tier_distribution(caller: Caller = Depends(get_caller),
                      service: LoyaltyService = Depends(get_service)):
    _require_role(caller, CallerRole.ADMIN)
    try:
        return service.get_tier_distribution()
    except LoyaltyError as e:
        raise _http_error(e)


@app.get("/reports/stats", response_model=LoyaltyStats, tags=["Reports"])
def stats(caller: Caller = Depends(get_caller), service: LoyaltyService = Depends(get_service)):
    _require_role(caller, CallerRole.ADMIN)
    try:
        return service.get_stats()
    except LoyaltyError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
