"""Application factory for the storefront service.

Usage:
    uvicorn storefront.main:app --host 0.0.0.0 --port 8000
"""

import datetime as dt
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import config
from .checkout import CheckoutService
from .coupons import CouponValidator
from .database import build_engine, build_session_factory, init_db
from .errors import StorefrontError
from .external_services import PaystackClient
from .inventory import ReservationManager
from .notifications import Notifier
from .payments import PaymentProvider, WebhookProcessor
from .routers import admin_router, inventory_router, order_router, payment_router
from .security import RateLimiter, issue_csrf_token
from .sweeper import ReservationSweeper
from .tracking import capture_exception
from .utils.dates import utcnow
from .utils.logging import configure_logging

logger = structlog.get_logger(__name__)

_HTTP_CODES = {
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in err["loc"][1:]) or str(err["loc"][0]),
                "message": err["msg"],
            }
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Validation failed", "code": "VALIDATION_ERROR", "details": details},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": exc.detail,
                "code": _HTTP_CODES.get(exc.status_code, f"HTTP_{exc.status_code}"),
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(SQLAlchemyError)
    async def store_error_handler(request: Request, exc: SQLAlchemyError):
        capture_exception(exc, path=request.url.path, method=request.method)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "A storage error occurred", "code": "STORE_ERROR"},
        )


def create_app(
    settings: Optional[config.Settings] = None,
    *,
    engine: Optional[Engine] = None,
    payment_provider: Optional[PaymentProvider] = None,
    notifier: Optional[Notifier] = None,
    clock=utcnow,
) -> FastAPI:
    settings = settings or config.Settings()
    configure_logging(config.LOG_LEVEL, config.LOG_JSON)

    if engine is None:
        engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    if payment_provider is None and settings.paystack_secret_key:
        payment_provider = PaystackClient(
            settings.paystack_secret_key,
            public_key=settings.paystack_public_key,
            base_url=settings.paystack_base_url,
            callback_base_url=settings.frontend_url,
        )
    if notifier is None:
        notifier = Notifier(enabled=settings.notifications_enabled)

    reservations = ReservationManager(
        session_factory,
        ttl=dt.timedelta(minutes=settings.reservation_ttl_minutes),
        clock=clock,
    )
    coupons = CouponValidator(clock=clock)
    sweeper = ReservationSweeper(reservations, interval=settings.sweep_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine)
        if settings.sweep_enabled:
            sweeper.start()
        logger.info("storefront_started", sweep_enabled=settings.sweep_enabled, sweep_interval=sweeper.interval)
        yield
        sweeper.stop()
        logger.info("storefront_stopped")

    app = FastAPI(
        title="Storefront Inventory Service",
        description="Stock reservations, checkout and payment reconciliation",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.reservations = reservations
    app.state.coupons = coupons
    app.state.notifier = notifier
    app.state.sweeper = sweeper
    app.state.checkout = CheckoutService(
        session_factory,
        reservations,
        coupons,
        payment_provider,
        notifier,
        price_tolerance=settings.price_mismatch_tolerance,
        order_id_prefix=settings.order_id_prefix,
    )
    app.state.webhooks = WebhookProcessor(session_factory, reservations, notifier)
    app.state.order_limiter = RateLimiter(settings.order_rate_limit, settings.order_rate_window_seconds)

    _register_exception_handlers(app)

    app.include_router(order_router.router)
    app.include_router(inventory_router.router)
    app.include_router(payment_router.router)
    app.include_router(admin_router.router)

    @app.get("/health")
    def health_check():
        return {
            "status": "healthy",
            "service": "storefront",
            "sweeper": {"running": sweeper.running, "paused": sweeper.paused},
        }

    @app.get("/csrf-token")
    def csrf_token(request: Request, response: Response):
        token = issue_csrf_token(response, secure=request.url.scheme == "https")
        return {"csrfToken": token}

    return app


app = create_app()
