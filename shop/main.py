"""
Shop Service — FastAPI エントリーポイント

注文ライフサイクルと決済リコンサイルの API。

  ┌──────────┐     ┌──────────────┐     ┌──────────────────┐
  │  Client  │────▶│ /auth        │────▶│ TokenService     │
  │          │────▶│ /orders      │────▶│ OrderSaga        │──▶ PostgreSQL
  │          │────▶│ /payments    │────▶│ (Stock Ledger)   │
  └──────────┘     └──────────────┘     └──────────────────┘
  ┌──────────┐                          ┌──────────────────┐
  │ Midtrans │──── /payments/notification ▶ WebhookReconciler │──▶ Redis Pub/Sub
  └──────────┘                          └──────────────────┘

起動:
    uvicorn shop.main:create_app --factory
"""

import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from .auth.routes import router as auth_router
from .auth.tokens import TokenService
from .config import Settings
from .db import init_schema, make_engine, make_session_factory
from .order.routes import router as order_router
from .payment.gateway import MidtransGateway
from .payment.reconciler import WebhookReconciler
from .payment.routes import router as payment_router
from .ratelimit import rate_limit
from .saga.orchestrator import OrderSagaOrchestrator

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    redis: aioredis.Redis | None = None,
    gateway_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """アプリケーションを組み立てる。引数を省略すると環境変数から構築する。"""
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    owns_engine = engine is None
    owns_redis = redis is None
    engine = engine or make_engine(settings.database_url)
    redis = redis or aioredis.from_url(settings.redis_url, decode_responses=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_schema(engine)
        yield
        if owns_redis:
            await redis.aclose()
        if owns_engine:
            await engine.dispose()

    app = FastAPI(title="Shop Order Service", lifespan=lifespan)

    session_factory = make_session_factory(engine)
    gateway = MidtransGateway.from_settings(settings, transport=gateway_transport)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.redis = redis
    app.state.tokens = TokenService(settings)
    app.state.gateway = gateway
    app.state.orchestrator = OrderSagaOrchestrator(session_factory, gateway, redis)
    app.state.reconciler = WebhookReconciler(session_factory, gateway, redis)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(rate_limit)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "detail": {
                    "code": "validation",
                    "message": "Invalid request",
                    "errors": jsonable_encoder(exc.errors()),
                }
            },
        )

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": {"code": "internal", "message": "Internal server error"}},
        )

    app.include_router(auth_router)
    app.include_router(order_router)
    app.include_router(payment_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "shop"}

    return app
