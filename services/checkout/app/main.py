"""
Checkout Service — FastAPI エントリーポイント

注文 Saga と決済検証を HTTP API として公開する。

  ┌──────────┐  POST /api/checkout         ┌──────────────────────┐
  │ Frontend │ ──────────────────────────▶ │ OrderSagaOrchestrator│──▶ DB / Gateway
  │          │  POST /api/checkout/verify  ├──────────────────────┤
  │          │ ──────────────────────────▶ │ PaymentVerifier      │──▶ DB
  └──────────┘                             └──────────┬───────────┘
                                                      │ Redis Pub/Sub
                                     saga_events / payment_events / order_notifications
                                                      │
                                              subscriber.py (メール送信)
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, field_validator

from . import catalog, notifications
from .config import Settings, load_settings
from .database import create_engine, create_session_factory
from .errors import CheckoutError
from .gateway import PaymentGateway, RazorpayGateway
from .models import CartLine, CustomerInfo, PaymentMethod, ShippingAddress
from .notifications import NotificationSender, PublishingNotificationSender
from .orchestrator import OrderSagaOrchestrator
from .publisher import EventPublisher
from .schema import init_db
from .subscriber import run_subscriber
from .verifier import PaymentVerifier

logger = logging.getLogger(__name__)

# 切断後も走り続けている Saga タスク
_detached_sagas: set[asyncio.Task] = set()


def _log_detached_saga(task: asyncio.Task) -> None:
    _detached_sagas.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Checkout saga failed after client disconnected", exc_info=exc)


# ── Request Models ───────────────────────────────


class CheckoutItemRequest(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1, le=10)
    variant: str | None = None
    color: str | None = None


class CustomerRequest(BaseModel):
    name: str = Field(min_length=2)
    email: EmailStr
    phone: str = Field(min_length=10, max_length=20)


class AddressRequest(BaseModel):
    line1: str = Field(min_length=3)
    line2: str = ""
    city: str = Field(min_length=2)
    state: str = Field(min_length=2)
    postal_code: str = Field(min_length=4, max_length=10)
    country: str = "India"

    @field_validator("country", mode="before")
    @classmethod
    def default_country(cls, value):
        return value or "India"


class CheckoutRequest(BaseModel):
    customer: CustomerRequest
    shipping_address: AddressRequest
    items: list[CheckoutItemRequest] = Field(min_length=1)
    payment_method: PaymentMethod
    notes: str = ""
    user_id: str | None = None


class VerifyPaymentRequest(BaseModel):
    order_id: str = Field(min_length=1)
    gateway_order_id: str = Field(min_length=1)
    gateway_payment_id: str = Field(min_length=1)
    signature: str = Field(min_length=1)


# ── App ──────────────────────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    session_factory=None,
    gateway: PaymentGateway | None = None,
    notifier: NotificationSender | None = None,
    publisher=None,
) -> FastAPI:
    """
    アプリを組み立てる。

    依存を渡さなかったものは lifespan で Settings から作る。
    テストでは session_factory / gateway / notifier / publisher を注入する。
    """
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = None
        redis_pool = None
        subscriber_task = None
        shutdown_event = asyncio.Event()

        state = app.state
        state.session_factory = session_factory
        state.gateway = gateway
        state.publisher = publisher
        state.notifier = notifier

        if state.session_factory is None:
            engine = create_engine(settings.database_url)
            if settings.create_schema:
                await init_db(engine)
            state.session_factory = create_session_factory(engine)

        if state.publisher is None:
            redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
            state.publisher = EventPublisher(redis_pool)
        if state.notifier is None:
            state.notifier = PublishingNotificationSender(state.publisher)
        if state.gateway is None:
            state.gateway = RazorpayGateway(
                settings.razorpay_key_id,
                settings.razorpay_key_secret,
                api_url=settings.razorpay_api_url,
                timeout=settings.gateway_timeout,
            )

        state.orchestrator = OrderSagaOrchestrator(
            state.session_factory,
            state.gateway,
            state.notifier,
            state.publisher,
            currency=settings.currency,
        )
        state.verifier = PaymentVerifier(state.session_factory, state.gateway, state.publisher)

        if redis_pool is not None and settings.notification_worker:
            subscriber_task = asyncio.create_task(
                run_subscriber(settings.redis_url, settings, shutdown_event)
            )

        yield

        await notifications.drain()
        shutdown_event.set()
        if subscriber_task is not None:
            subscriber_task.cancel()
            try:
                await subscriber_task
            except asyncio.CancelledError:
                pass
        if gateway is None:
            await state.gateway.aclose()
        if redis_pool is not None:
            await redis_pool.aclose()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="Checkout Service", lifespan=lifespan)

    # CORS 設定（storefront からのアクセスを許可）
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        logger.info("%s on %s: %s", exc.code, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # ── Command Endpoints ────────────────────────

    @app.post("/api/checkout", status_code=201)
    async def place_order(req: CheckoutRequest, request: Request):
        """
        注文 Saga を実行する。

        クライアントが切断しても Saga (引き当てと補償) は最後まで走らせる。
        """
        orchestrator: OrderSagaOrchestrator = request.app.state.orchestrator
        saga = asyncio.ensure_future(
            orchestrator.place_order(
                cart=[CartLine(**item.model_dump()) for item in req.items],
                customer=CustomerInfo(**req.customer.model_dump(), user_id=req.user_id),
                address=ShippingAddress(**req.shipping_address.model_dump()),
                payment_method=req.payment_method,
                notes=req.notes,
            )
        )
        try:
            result = await asyncio.shield(saga)
        except asyncio.CancelledError:
            _detached_sagas.add(saga)
            saga.add_done_callback(_log_detached_saga)
            raise
        except CheckoutError:
            raise
        except Exception as e:
            logger.exception("Checkout failed unexpectedly")
            raise CheckoutError(str(e)) from e
        return result.model_dump(mode="json", exclude_none=True)

    @app.post("/api/checkout/verify")
    async def verify_payment(req: VerifyPaymentRequest, request: Request):
        """決済完了コールバックの署名を検証し、注文を paid にする。"""
        verifier: PaymentVerifier = request.app.state.verifier
        result = await verifier.verify(
            req.order_id,
            req.gateway_order_id,
            req.gateway_payment_id,
            req.signature,
            raw_payload=req.model_dump(),
        )
        return {"message": result.message}

    # ── Query Endpoints ──────────────────────────

    @app.get("/queries/variants/{variant_id}/stock")
    async def query_variant_stock(variant_id: str, request: Request):
        """バリアントの現在庫を取得"""
        async with request.app.state.session_factory() as session:
            result = await catalog.get_variant_stock(session, variant_id)
        if not result:
            raise HTTPException(404, "Variant not found")
        return result

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "checkout-service"}

    return app


app = create_app()
