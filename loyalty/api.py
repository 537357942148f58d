from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .errors import (
    AccountAlreadyExistsError,
    LedgerServiceError,
    NotFoundError,
    TransientStoreError,
)
from .expiry import ExpirySweeper
from .factory import build_service
from .models import (
    Account,
    AdjustPointsRequest,
    BalanceReconciliation,
    EarnPointsRequest,
    ExpirySweepRequest,
    LedgerOperationResponse,
    LoyaltySummary,
    RedeemPointsRequest,
    SweepResult,
    Transaction,
    TransactionPage,
    TransactionType,
)
from .scheduler import shutdown_expiry_scheduler, start_expiry_scheduler
from .service import LedgerService
from .utils.logging import bind_context, clear_context, configure_logging

router = APIRouter()


def get_ledger_service(request: Request) -> LedgerService:
    return request.app.state.ledger_service


def _http_error(exc: LedgerServiceError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, AccountAlreadyExistsError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, TransientStoreError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc),
                             headers={"Retry-After": "1"})
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "loyalty-ledger"}


@router.get("/customers/{customer_id}/loyalty", response_model=Account, tags=["Accounts"])
def get_account(customer_id: str, service: LedgerService = Depends(get_ledger_service)) -> Account:
    try:
        return service.get_account(customer_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/customers/{customer_id}/loyalty", response_model=Account,
             status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def open_account(customer_id: str, service: LedgerService = Depends(get_ledger_service)) -> Account:
    try:
        return service.open_account(customer_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/customers/{customer_id}/loyalty/summary", response_model=LoyaltySummary, tags=["Accounts"])
def get_summary(customer_id: str, service: LedgerService = Depends(get_ledger_service)) -> LoyaltySummary:
    try:
        return service.get_summary(customer_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/customers/{customer_id}/loyalty/reconciliation", response_model=BalanceReconciliation,
            tags=["Accounts"])
def reconcile(customer_id: str, service: LedgerService = Depends(get_ledger_service)) -> BalanceReconciliation:
    try:
        return service.reconcile_account(customer_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/customers/{customer_id}/loyalty/earn", response_model=LedgerOperationResponse,
             status_code=status.HTTP_201_CREATED, tags=["Points"])
def earn_points(customer_id: str, request: EarnPointsRequest,
                service: LedgerService = Depends(get_ledger_service)) -> LedgerOperationResponse:
    try:
        result = service.earn_points(customer_id, request.points, request.description,
                                     request.reference, request.expires_at)
    except LedgerServiceError as e:
        raise _http_error(e)
    return LedgerOperationResponse.from_result(result, f"Earned {request.points} points")


@router.post("/customers/{customer_id}/loyalty/redeem", response_model=LedgerOperationResponse,
             status_code=status.HTTP_201_CREATED, tags=["Points"])
def redeem_points(customer_id: str, request: RedeemPointsRequest,
                  service: LedgerService = Depends(get_ledger_service)) -> LedgerOperationResponse:
    try:
        result = service.redeem_points(customer_id, request.points, request.description, request.reference)
    except LedgerServiceError as e:
        raise _http_error(e)
    return LedgerOperationResponse.from_result(result, f"Redeemed {request.points} points")


@router.post("/customers/{customer_id}/loyalty/adjust", response_model=LedgerOperationResponse,
             status_code=status.HTTP_201_CREATED, tags=["Points"])
def adjust_points(customer_id: str, request: AdjustPointsRequest,
                  service: LedgerService = Depends(get_ledger_service)) -> LedgerOperationResponse:
    try:
        result = service.adjust_points(customer_id, request.points, request.description, request.reference)
    except LedgerServiceError as e:
        raise _http_error(e)
    return LedgerOperationResponse.from_result(result, f"Adjusted balance by {request.points} points")


@router.get("/customers/{customer_id}/loyalty/transactions", response_model=TransactionPage, tags=["Points"])
def list_transactions(
    customer_id: str,
    page: int = 1,
    limit: Optional[int] = None,
    type: Optional[TransactionType] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    service: LedgerService = Depends(get_ledger_service),
) -> TransactionPage:
    try:
        return service.list_transactions(customer_id, page, limit, type, date_from, date_to)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/loyalty/transactions/{transaction_id}", response_model=Transaction, tags=["Points"])
def get_transaction(transaction_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> Transaction:
    try:
        return service.get_transaction(transaction_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/loyalty/expiry-sweep", response_model=SweepResult, tags=["Jobs"])
def run_expiry_sweep(request: Optional[ExpirySweepRequest] = None,
                     service: LedgerService = Depends(get_ledger_service)) -> SweepResult:
    return service.run_expiry_sweep(request.now if request else None)


def create_app(
    service: Optional[LedgerService] = None,
    settings: Optional[Settings] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    service = service or build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level, settings.log_json)
        scheduler, sweeper = None, None
        if settings.sweep_enabled:
            sweeper = ExpirySweeper(service, max_workers=settings.sweep_max_workers)
            scheduler = start_expiry_scheduler(sweeper, settings.sweep_interval_minutes)
        yield
        if scheduler is not None:
            shutdown_expiry_scheduler(scheduler, sweeper)

    app = FastAPI(
        title="Loyalty Ledger API",
        description="Loyalty points ledger with immutable transactions, tiers and point expiry",
        version="1.0.0",
        lifespan=lifespan,
        root_path=root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        clear_context()
        bind_context(method=request.method, path=request.url.path)
        return await call_next(request)

    app.state.ledger_service = service
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
