from datetime import datetime
from typing import Optional, Union
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import AuthenticationError, decode_token
from .config import Settings, configure_logging
from .errors import LedgerServiceError
from .models import (
    Account,
    AccountActionRequest,
    BulkTransferReport,
    BulkTransferRequest,
    DailyMintRequest,
    DailyMintStatus,
    DecisionRequest,
    Identity,
    MintReport,
    RecoverChipsRequest,
    RecoveryResponse,
    ReverseRequest,
    TransactionFilters,
    TransactionPage,
    TransactionStatus,
    TransactionType,
    TransactionView,
    TransferRequest,
    TransferResponse,
)
from .service import LedgerService

router = APIRouter()


def get_service(request: Request) -> LedgerService:
    return request.app.state.ledger_service


def get_identity(
    request: Request,
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> Identity:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    settings: Settings = request.app.state.settings
    try:
        return decode_token(authorization.split(" ", 1)[1], settings.jwt_secret, settings.jwt_algorithm)
    except AuthenticationError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "chip-ledger"}


@router.get("/balance", response_model=Union[list[Account], Account], tags=["Accounts"])
def get_balance(
    search: Optional[str] = None,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
):
    if actor.is_admin:
        return service.list_balances(actor, search)
    return service.get_balance(actor)


@router.get("/users", response_model=list[Account], tags=["Accounts"])
def list_users(
    search: Optional[str] = None,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
) -> list[Account]:
    return service.list_balances(actor, search)


@router.post("/transfer", response_model=TransferResponse, status_code=status.HTTP_201_CREATED, tags=["Transfers"])
def submit_transfer(
    request: TransferRequest,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> TransferResponse:
    return service.submit_transfer(actor, request, idempotency_key)


@router.post("/transfer/bulk", response_model=BulkTransferReport, tags=["Transfers"])
def bulk_transfer(
    request: BulkTransferRequest,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> BulkTransferReport:
    return service.bulk_transfer(actor, request.items, idempotency_key)


@router.post("/transfer/approve", response_model=TransferResponse, tags=["Transfers"])
def approve_request(
    request: DecisionRequest,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> TransferResponse:
    return service.approve_request(actor, request.transaction_id, idempotency_key)


@router.post("/transfer/reject", response_model=TransferResponse, tags=["Transfers"])
def reject_request(
    request: DecisionRequest,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> TransferResponse:
    return service.reject_request(actor, request.transaction_id, request.reason, idempotency_key)


@router.post("/transfer/reverse", response_model=TransferResponse, tags=["Transfers"])
def reverse_transaction(
    request: ReverseRequest,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> TransferResponse:
    return service.reverse_transaction(actor, request.transaction_id, request.reason, idempotency_key)


@router.get("/transactions", response_model=TransactionPage, tags=["Transactions"])
def list_transactions(
    tx_type: Optional[TransactionType] = Query(default=None, alias="type"),
    tx_status: Optional[TransactionStatus] = Query(default=None, alias="status"),
    from_date: Optional[datetime] = Query(default=None, alias="fromDate"),
    to_date: Optional[datetime] = Query(default=None, alias="toDate"),
    search: Optional[str] = None,
    account_id: Optional[UUID] = Query(default=None, alias="accountId"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
) -> TransactionPage:
    filters = TransactionFilters(
        type=tx_type, status=tx_status, from_date=from_date, to_date=to_date,
        search=search, account_id=account_id,
    )
    return service.list_transactions(actor, filters, limit, offset)


@router.get("/transactions/{transaction_id}", response_model=TransactionView, tags=["Transactions"])
def get_transaction(
    transaction_id: UUID,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
) -> TransactionView:
    return service.get_transaction(actor, transaction_id)


@router.post("/daily-claim", response_model=TransferResponse, status_code=status.HTTP_201_CREATED, tags=["Daily Mint"])
def claim_daily_chips(
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> TransferResponse:
    return service.claim_daily_mint(actor, idempotency_key)


@router.get("/daily-claim/status", response_model=DailyMintStatus, tags=["Daily Mint"])
def daily_claim_status(
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
) -> DailyMintStatus:
    return service.daily_mint_status(actor)


@router.post("/daily-mint", response_model=MintReport, tags=["Daily Mint"])
def daily_mint(
    request: DailyMintRequest,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> MintReport:
    return service.mint_for_all_eligible(actor, request.amount_per_user, idempotency_key)


@router.post("/recovery/chips", response_model=RecoveryResponse, tags=["Recovery"])
def recover_chips(
    request: RecoverChipsRequest,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> RecoveryResponse:
    return service.recover_chips(
        actor, request.banned_user_id, request.verified_user_id, request.reason, idempotency_key
    )


@router.get("/recovery/banned-users", response_model=list[Account], tags=["Recovery"])
def banned_users(
    search: Optional[str] = None,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
) -> list[Account]:
    return service.list_banned_with_balance(actor, search)


@router.get("/recovery/verified-users", response_model=list[Account], tags=["Recovery"])
def verified_users(
    search: Optional[str] = None,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
) -> list[Account]:
    return service.list_verified(actor, search)


@router.post("/recovery/verify", response_model=Account, tags=["Recovery"])
def verify_user(
    request: AccountActionRequest,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> Account:
    return service.verify_account(actor, request.user_id, idempotency_key)


@router.post("/recovery/ban", response_model=Account, tags=["Recovery"])
def ban_user(
    request: AccountActionRequest,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> Account:
    return service.ban_account(actor, request.user_id, request.reason or "", idempotency_key)


@router.post("/recovery/unban", response_model=Account, tags=["Recovery"])
def unban_user(
    request: AccountActionRequest,
    actor: Identity = Depends(get_identity),
    service: LedgerService = Depends(get_service),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> Account:
    return service.unban_account(actor, request.user_id, idempotency_key)


async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.message, "code": exc.code, "detail": exc.to_detail()},
    )


def create_app(
    service: Optional[LedgerService] = None,
    settings: Optional[Settings] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or (service.settings if service is not None else Settings.from_env())
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Chip Ledger API",
        description="Chip balances, transfer approvals, reversals, recovery and daily mint",
        version="1.0.0",
        root_path=root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.ledger_service = service or LedgerService(settings=settings)
    app.add_exception_handler(LedgerServiceError, ledger_error_handler)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
