import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from secrets import token_urlsafe
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .facade import LedgerFacade, build_facade
from .logging_config import setup_logging
from .models import (
    AmountRequest,
    BindRequest,
    BindResult,
    ReferralCodeResponse,
    TierStats,
    Transaction,
    WalletResponse,
)
from .referrals import normalize_code
from .settings import get_settings
from .storage import NotDurable, StoreIOError


logger = logging.getLogger(__name__)

VISITOR_COOKIE_MAX_AGE = 60 * 60 * 24 * 365


def new_visitor_id() -> str:
    return token_urlsafe(8)[:10]


def wallet_address(user_id: str) -> str:
    return f"TMUSDT-DEMO-{user_id[:6]}"


def origin_base(request: Request) -> str:
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme or "https"
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{proto}://{host}"


def create_app(facade: Optional[LedgerFacade] = None) -> FastAPI:
    settings = facade.settings if facade is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings)
        owned = getattr(app.state, "facade", None) is None
        if owned:
            app.state.facade = await run_in_threadpool(build_facade, settings)
        yield
        if owned:
            app.state.facade.store.close()

    app = FastAPI(
        title="TrustMe Ledger API",
        description="Wallet ledger and three-tier referral network",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.facade = facade

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def identify_visitor(request: Request, call_next):
        ledger: LedgerFacade = request.app.state.facade
        visitor_id = request.cookies.get(settings.visitor_cookie)
        issued = not visitor_id
        if issued:
            visitor_id = new_visitor_id()
        request.state.visitor_id = visitor_id

        try:
            await run_in_threadpool(ledger.ensure_user, visitor_id)
            ref = request.query_params.get("ref", "").strip()
            if ref:
                await run_in_threadpool(ledger.bind_referral, visitor_id, ref)
        except StoreIOError as e:
            logger.warning("Visitor %s not persisted: %s", visitor_id, e)

        response = await call_next(request)
        if issued:
            response.set_cookie(
                settings.visitor_cookie,
                visitor_id,
                max_age=VISITOR_COOKIE_MAX_AGE,
                httponly=True,
                samesite="lax",
            )
        return response

    @app.exception_handler(StoreIOError)
    async def store_unavailable(request: Request, exc: StoreIOError):
        detail = {"ok": False, "error": "storage_unavailable", "message": str(exc)}
        if isinstance(exc, NotDurable) and isinstance(exc.record, Transaction):
            detail["tx"] = exc.record.model_dump(mode="json", by_alias=True)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=detail)

    def current_facade(request: Request) -> LedgerFacade:
        return request.app.state.facade

    @app.get("/health", tags=["System"])
    def health_check():
        return {
            "status": "healthy",
            "service": settings.app_name,
            "time": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/wallet/balance", response_model=WalletResponse, tags=["Wallet"])
    def get_balance(request: Request) -> WalletResponse:
        visitor_id = request.state.visitor_id
        balance = current_facade(request).wallet_balance(visitor_id)
        return WalletResponse(
            balance=balance.balance,
            pending=balance.pending,
            address=wallet_address(visitor_id),
        )

    @app.get("/api/wallet/tx", response_model=list[Transaction], tags=["Wallet"])
    def get_transactions(request: Request) -> list[Transaction]:
        return current_facade(request).recent_transactions(request.state.visitor_id)

    @app.post("/api/wallet/deposit", tags=["Wallet"])
    def deposit(request: Request, body: Optional[AmountRequest] = None):
        amount = body.amount if body else None
        result = current_facade(request).record_deposit(request.state.visitor_id, amount)
        return _transaction_response(result)

    @app.post("/api/wallet/withdraw", tags=["Wallet"])
    def withdraw(request: Request, body: Optional[AmountRequest] = None):
        amount = body.amount if body else None
        result = current_facade(request).record_withdrawal(request.state.visitor_id, amount)
        return _transaction_response(result)

    @app.get("/api/referral/my", response_model=ReferralCodeResponse, tags=["Referrals"])
    def my_referral(request: Request) -> ReferralCodeResponse:
        referral = current_facade(request).my_referral_code(request.state.visitor_id)
        return ReferralCodeResponse(
            code=referral.code,
            link=f"{origin_base(request)}/?ref={referral.code}",
        )

    @app.get("/api/referral/stats", response_model=TierStats, tags=["Referrals"])
    def my_referral_stats(request: Request) -> TierStats:
        ledger = current_facade(request)
        referral = ledger.my_referral_code(request.state.visitor_id)
        return ledger.referral_stats(referral.code)

    @app.get("/api/referral/by/{code}", response_model=TierStats, tags=["Referrals"])
    def referral_stats_by_code(request: Request, code: str) -> TierStats:
        return current_facade(request).referral_stats(normalize_code(code))

    @app.post("/api/referral/bind", response_model=BindResult, tags=["Referrals"])
    def bind_referral(request: Request, body: Optional[BindRequest] = None):
        if body is None or not body.code or not body.code.strip():
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"ok": False, "error": "code required"},
            )
        return current_facade(request).bind_referral(request.state.visitor_id, body.code)

    return app


def _transaction_response(result):
    if not result.ok:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ok": False, "error": result.error.value, "message": result.message},
        )
    return {"ok": True, "tx": result.transaction.model_dump(mode="json", by_alias=True)}


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
