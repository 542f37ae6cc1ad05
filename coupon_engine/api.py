import logging
import time
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .models import (
    CreateCouponRequest, DepositRequest, WithdrawRequest, PayRequest,
    CouponResponse, WithdrawResponse, CouponListResponse, CouponHistoryResponse,
    CouponWithEvents,
)
from .service import (
    CouponLedger, LedgerServiceError, CouponNotFoundError,
    ExternalTransferFailedError, WithdrawalUnconfirmedError,
)
from .settings import Settings, configure_logging, get_settings
from .store import JsonFileStore
from .transfer import SolanaTransfer

logger = logging.getLogger(__name__)

settings = get_settings()


@lru_cache
def get_ledger() -> CouponLedger:
    current = get_settings()
    return CouponLedger(
        store=JsonFileStore(current.data_dir),
        transfer=SolanaTransfer.from_settings(current),
        pool_address=current.pool_address,
    )


LedgerDep = Annotated[CouponLedger, Depends(get_ledger)]
SettingsDep = Annotated[Settings, Depends(get_settings)]


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    logger.info("ZKNON coupon backend starting (env=%s)", settings.env)
    logger.info("Allowed CORS origins: %s", ", ".join(settings.allowed_origins))
    logger.info("Pool address: %s", settings.pool_address)
    logger.info("RPC URL: %s", settings.solana_rpc_url)
    ledger = app.dependency_overrides.get(get_ledger, get_ledger)()
    for record in ledger.reconcile_withdrawals():
        logger.info("Withdrawal %s (%s) is now recorded", record.id, record.tx_sig)
    yield
    logger.info("ZKNON coupon backend stopped")


app = FastAPI(
    title="ZKNON Coupon Engine",
    description="Prepaid SOL coupons with deposits, off-chain payments and on-chain withdrawals",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


def _require_wallet(wallet: str) -> str:
    wallet = wallet.strip()
    if not wallet:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="wallet query param is required")
    return wallet


@app.get("/health", tags=["System"])
def health_check(current: SettingsDep):
    return {
        "status": "ok",
        "network": "solana-mainnet",
        "pool_address": current.pool_address,
        "rpc_url": "configured" if current.solana_rpc_url else "missing",
        "rpc_with_tatum": current.has_tatum_key,
        "env": current.env,
    }


@app.get("/config/public", tags=["System"])
def public_config(current: SettingsDep):
    return {"pool_address": current.pool_address}


@app.get("/coupons", response_model=CouponListResponse, tags=["Coupons"])
def list_coupons(ledger: LedgerDep, current: SettingsDep, wallet: str = "") -> CouponListResponse:
    wallet = _require_wallet(wallet)
    try:
        histories = ledger.list_for_owner(wallet)
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return CouponListResponse(
        wallet=wallet,
        pool_address=current.pool_address,
        coupons=[CouponWithEvents(**h.coupon.model_dump(), events=h.events) for h in histories],
    )


@app.post("/coupons", response_model=CouponResponse, status_code=status.HTTP_201_CREATED, tags=["Coupons"])
def create_coupon(request: CreateCouponRequest, ledger: LedgerDep) -> CouponResponse:
    try:
        coupon, event = ledger.create_coupon(request.wallet, request.label, request.amount_sol, request.expiry)
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return CouponResponse(coupon=coupon, event=event, message="Coupon created successfully")


@app.post("/coupons/{coupon_id}/deposit", response_model=CouponResponse, tags=["Coupons"])
def deposit(coupon_id: str, request: DepositRequest, ledger: LedgerDep) -> CouponResponse:
    try:
        coupon, event = ledger.deposit(coupon_id, request.wallet, request.amount_sol, request.tx_sig)
    except CouponNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return CouponResponse(coupon=coupon, event=event, message="Deposit recorded")


@app.post("/coupons/{coupon_id}/withdraw-onchain", response_model=WithdrawResponse, tags=["Coupons"])
def withdraw_onchain(coupon_id: str, request: WithdrawRequest, ledger: LedgerDep) -> WithdrawResponse:
    try:
        coupon, event = ledger.withdraw_onchain(coupon_id, request.wallet, request.amount_sol, request.recipient)
    except CouponNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except WithdrawalUnconfirmedError as e:
        logger.error("withdraw-onchain unconfirmed for %s: %s", coupon_id, e)
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail={"error": "on-chain withdraw not confirmed", "details": str(e), "tx_sig": e.tx_sig},
        )
    except ExternalTransferFailedError as e:
        logger.error("withdraw-onchain failed for %s: %s", coupon_id, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "on-chain withdraw failed", "details": str(e)},
        )
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return WithdrawResponse(coupon=coupon, event=event, tx_sig=event.tx_sig, message="Withdrawal confirmed")


@app.post("/pay", response_model=CouponResponse, tags=["Payments"])
def pay(request: PayRequest, ledger: LedgerDep) -> CouponResponse:
    try:
        coupon, event = ledger.pay(request.wallet, request.coupon_id, request.amount_sol, request.merchant, request.note)
    except CouponNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return CouponResponse(coupon=coupon, event=event, message="Payment completed")


@app.get("/coupons/{coupon_id}/history", response_model=CouponHistoryResponse, tags=["Coupons"])
def coupon_history(coupon_id: str, ledger: LedgerDep, wallet: str = "") -> CouponHistoryResponse:
    wallet = _require_wallet(wallet)
    try:
        history = ledger.get_history(coupon_id, wallet)
    except CouponNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return CouponHistoryResponse(coupon=history.coupon, events=history.events)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
