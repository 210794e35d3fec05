import logging
import secrets
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .config import configure_logging, get_settings
from .exceptions import (
    BalanceEngineError,
    BelowMinimum,
    InsufficientBalance,
    InvalidState,
    KycNotApproved,
    PersistenceConflict,
    ValidationError,
    WithdrawalNotFound,
)
from .models import (
    BackfillResponse,
    BalanceSummary,
    CommissionResult,
    CreateWithdrawalRequest,
    EntryCategory,
    EntryStatus,
    EntryType,
    MaturationResult,
    PurchaseApproval,
    ResolveWithdrawalRequest,
    SyncResponse,
    TransactionPage,
    UserScopeRequest,
    Withdrawal,
    WithdrawalPage,
    WithdrawalStatus,
)
from .service import BalanceEngine, create_engine
from .storage import StorageError


logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Failed to process request"


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, (ValidationError, BelowMinimum, InsufficientBalance)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, KycNotApproved):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, WithdrawalNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, InvalidState):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, PersistenceConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT,
                             detail="Request conflicted with a concurrent update, please retry")
    logger.exception("Balance engine failure")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=GENERIC_FAILURE)


def create_app(engine: Optional[BalanceEngine] = None) -> FastAPI:
    settings = engine.settings if engine else get_settings()
    configure_logging(settings)
    engine = engine or create_engine(settings)

    app = FastAPI(
        title="Affiliate Balance API",
        description="Affiliate commission balances, maturation, withdrawals and reconciliation",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.engine = engine

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "affiliate-balance"}

    @app.get("/users/{user_id}/balance", response_model=BalanceSummary, tags=["Balances"])
    def get_balance(user_id: str) -> BalanceSummary:
        try:
            return engine.get_balance_summary(user_id)
        except (BalanceEngineError, StorageError) as e:
            raise _http_error(e)

    @app.get("/users/{user_id}/transactions", response_model=TransactionPage, tags=["Balances"])
    def get_transactions(
        user_id: str,
        type: Optional[EntryType] = None,
        category: Optional[EntryCategory] = None,
        status: Optional[EntryStatus] = None,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
    ) -> TransactionPage:
        return engine.get_transaction_history(user_id, type, category, status, page, limit)

    @app.post("/purchases/approved", response_model=list[CommissionResult], tags=["Commissions"])
    def purchase_approved(event: PurchaseApproval) -> list[CommissionResult]:
        return engine.process_purchase_approval(event)

    @app.post(
        "/users/{user_id}/withdrawals",
        response_model=Withdrawal,
        status_code=status.HTTP_201_CREATED,
        tags=["Withdrawals"],
    )
    def request_withdrawal(user_id: str, request: CreateWithdrawalRequest) -> Withdrawal:
        try:
            return engine.request_withdrawal(user_id, request.amount, request.method, request.account_details)
        except (BalanceEngineError, StorageError) as e:
            raise _http_error(e)

    @app.get("/users/{user_id}/withdrawals", response_model=WithdrawalPage, tags=["Withdrawals"])
    def list_user_withdrawals(
        user_id: str,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1, le=100),
    ) -> WithdrawalPage:
        return engine.list_withdrawals(user_id=user_id, page=page, limit=limit)

    @app.get("/admin/withdrawals", response_model=WithdrawalPage, tags=["Admin"])
    def list_withdrawals(
        status: Optional[WithdrawalStatus] = None,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1, le=100),
    ) -> WithdrawalPage:
        return engine.list_withdrawals(status=status, page=page, limit=limit)

    @app.post("/admin/withdrawals/{withdrawal_id}/resolve", response_model=Withdrawal, tags=["Admin"])
    def resolve_withdrawal(withdrawal_id: UUID, request: ResolveWithdrawalRequest) -> Withdrawal:
        try:
            return engine.resolve_withdrawal(
                withdrawal_id,
                request.action,
                request.approver_id,
                external_txn_id=request.transaction_id,
                rejection_reason=request.rejection_reason,
            )
        except (BalanceEngineError, StorageError) as e:
            raise _http_error(e)

    @app.post("/admin/commissions/backfill", response_model=BackfillResponse, tags=["Admin"])
    def backfill_commissions(events: list[PurchaseApproval]) -> BackfillResponse:
        return engine.backfill_commissions(events)

    @app.post("/admin/balances/sync", response_model=SyncResponse, tags=["Admin"])
    def sync_balances(request: UserScopeRequest) -> SyncResponse:
        return engine.sync_balances(request.user_id)

    @app.post("/admin/balances/release-pending", response_model=list[MaturationResult], tags=["Admin"])
    def release_pending(request: UserScopeRequest) -> list[MaturationResult]:
        return engine.release_all_pending(request.user_id)

    @app.get("/cron/process-commissions", tags=["System"])
    def process_commissions(token: Optional[str] = None):
        expected = engine.settings.CRON_SECRET_TOKEN
        if not expected:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cron trigger is not configured")
        if not token or not secrets.compare_digest(token, expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        try:
            processed = engine.process_pending_commissions()
        except (BalanceEngineError, StorageError) as e:
            raise _http_error(e)
        return {"success": True, "processed": processed}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
