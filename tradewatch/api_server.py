from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException

from .errors import (
    AlertAlreadyInactive,
    AlertNotFound,
    ConcurrentModification,
    DomainError,
    DuplicateAlert,
    InfrastructureError,
    InsufficientBalance,
    InvalidCryptocurrency,
    QuoteUnavailable,
    StorageError,
    TradeNotFound,
    TradewatchError,
    UserNotFound,
    ValidationError,
)


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ERROR_STATUS: Dict[type, int] = {
    ValidationError: 400,
    InvalidCryptocurrency: 400,
    InsufficientBalance: 400,
    UserNotFound: 404,
    AlertNotFound: 404,
    TradeNotFound: 404,
    DuplicateAlert: 409,
    AlertAlreadyInactive: 409,
    ConcurrentModification: 409,
    QuoteUnavailable: 503,
    StorageError: 500,
}

HTTP_CODES = {
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


@dataclass(slots=True, frozen=True)
class Principal:
    user_id: int
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    def has(self, permission: str) -> bool:
        return permission in self.permissions or "admin" in self.permissions


def current_principal(request: Request) -> Principal:
    # set by the host's auth middleware
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return principal


def require_permission(permission: str):
    def dependency(principal: Principal = Depends(current_principal)) -> Principal:
        if not principal.has(permission):
            raise HTTPException(status_code=403, detail=f"Missing permission: {permission}")
        return principal

    return dependency


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TradeRequest(_CamelModel):
    symbol: str
    amount: float
    type: str


class AlertRequest(_CamelModel):
    symbol: str
    target_price: float = Field(alias="targetPrice")
    condition: str
    trade_type: Optional[str] = Field(default=None, alias="tradeType")
    trade_amount: Optional[float] = Field(default=None, alias="tradeAmount")


class AlertStatusRequest(_CamelModel):
    is_active: bool = Field(alias="isActive")
    expected_is_active: Optional[bool] = Field(default=None, alias="expectedIsActive")


def _error_response(status_code: int, error: str, detail: Optional[str] = None) -> JSONResponse:
    body: Dict[str, Any] = {"error": error}
    if detail:
        body["detail"] = detail
    return JSONResponse(status_code=status_code, content=body)


def status_for(exc: TradewatchError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    if isinstance(exc, DomainError):
        return 400
    return 500


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(TradewatchError)
    async def handle_core_error(request: Request, exc: TradewatchError) -> JSONResponse:
        status = status_for(exc)
        if isinstance(exc, InfrastructureError):
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
        return _error_response(status, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        detail = f"{where}: {first.get('msg', 'invalid request')}" if where else "invalid request"
        return _error_response(400, ValidationError.code, detail)

    @app.exception_handler(HTTPException)
    async def handle_http(request: Request, exc: HTTPException) -> JSONResponse:
        code = HTTP_CODES.get(exc.status_code, "HTTP_ERROR")
        return _error_response(exc.status_code, code, str(exc.detail) if exc.detail else None)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def create_app(engine) -> FastAPI:
    """Build the HTTP app around an unstarted ``RuntimeEngine``; the app's lifespan starts and stops it."""
    settings = engine.settings

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        await engine.start()
        try:
            yield
        finally:
            await engine.stop()

    app = FastAPI(title="tradewatch", lifespan=lifespan)
    app.state.engine = engine
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    router = APIRouter(prefix=f"{settings.api.base_path.rstrip('/')}/api")

    # ------------------------------------------------------------ trades

    @router.post("/trades", status_code=201)
    async def post_trade(
        body: TradeRequest, principal: Principal = Depends(require_permission("trade"))
    ) -> Dict[str, Any]:
        trade = await engine.executor.execute_trade(
            principal.user_id, body.symbol, body.amount, body.type
        )
        return trade.to_dict()

    @router.get("/trades")
    async def get_trades(
        limit: int = Query(10, ge=1, le=100),
        offset: int = Query(0, ge=0),
        principal: Principal = Depends(require_permission("view_trades")),
    ) -> Dict[str, Any]:
        trades = await engine.executor.get_trade_history(principal.user_id, limit=limit, offset=offset)
        return {"items": [t.to_dict() for t in trades]}

    @router.get("/trades/{trade_id}/profit-loss")
    async def get_profit_loss(
        trade_id: int, principal: Principal = Depends(require_permission("view_trades"))
    ) -> Dict[str, Any]:
        owner = None if "admin" in principal.permissions else principal.user_id
        result = await engine.executor.calculate_profit_loss(trade_id, user_id=owner)
        return result.to_dict()

    # ------------------------------------------------------------ alerts

    @router.post("/alerts", status_code=201)
    async def post_alert(
        body: AlertRequest, principal: Principal = Depends(require_permission("manage_alerts"))
    ) -> Dict[str, Any]:
        alert = await engine.evaluator.create_alert(
            principal.user_id,
            body.symbol,
            body.target_price,
            body.condition,
            trade_type=body.trade_type,
            trade_amount=body.trade_amount,
        )
        return alert.to_dict()

    @router.get("/alerts")
    async def get_alerts(
        active_only: bool = Query(False, alias="activeOnly"),
        principal: Principal = Depends(require_permission("manage_alerts")),
    ) -> Dict[str, Any]:
        alerts = await engine.evaluator.get_alerts(principal.user_id, active_only=active_only)
        return {"items": [a.to_dict() for a in alerts]}

    @router.patch("/alerts/{alert_id}")
    async def patch_alert(
        alert_id: int,
        body: AlertStatusRequest,
        principal: Principal = Depends(require_permission("manage_alerts")),
    ) -> Dict[str, Any]:
        return await engine.evaluator.update_alert_status(
            alert_id,
            body.is_active,
            user_id=principal.user_id,
            expected_is_active=body.expected_is_active,
        )

    @router.delete("/alerts/{alert_id}")
    async def delete_alert(
        alert_id: int, principal: Principal = Depends(require_permission("manage_alerts"))
    ) -> Dict[str, Any]:
        deleted = await engine.evaluator.delete_alert(alert_id, principal.user_id)
        return {"deleted": deleted}

    # --------------------------------------------------------- portfolio

    def _check_owner(principal: Principal, user_id: int) -> None:
        if user_id != principal.user_id and "admin" not in principal.permissions:
            raise HTTPException(status_code=403, detail="Cannot read another user's portfolio")

    @router.get("/portfolio/{user_id}")
    async def get_portfolio(
        user_id: int, principal: Principal = Depends(require_permission("view_portfolio"))
    ) -> Dict[str, Any]:
        _check_owner(principal, user_id)
        portfolio = await engine.portfolio.calculate_portfolio(user_id)
        return portfolio.to_dict()

    @router.get("/portfolio/{user_id}/performance")
    async def get_performance(
        user_id: int,
        timeframe: str = Query("24h"),
        principal: Principal = Depends(require_permission("view_portfolio")),
    ) -> Dict[str, Any]:
        _check_owner(principal, user_id)
        performance = await engine.portfolio.get_portfolio_performance(user_id, timeframe)
        return performance.to_dict()

    # ------------------------------------------------------------- misc

    @router.get("/notifications")
    async def get_notifications(
        limit: int = Query(50, ge=1, le=500),
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        events = await engine.sink.recent(user_id=principal.user_id, limit=limit)
        return {"items": [e.to_dict() for e in events]}

    @router.get("/health")
    async def get_health() -> Dict[str, Any]:
        return await engine.health()

    app.include_router(router)
    return app
