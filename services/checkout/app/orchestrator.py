"""
Saga Orchestrator — 注文 Saga (チェックアウト)

Saga パターン（オーケストレーション型）:
  中央のオーケストレーターが各ステップを順に実行する。
  失敗時は補償トランザクション(Compensating Transaction)を実行して
  整合性を保つ。呼び出し側が「在庫は減ったのに注文が無い」状態を
  見ることはない。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. カートを解決 (Catalog Resolver)          失敗 → 中断     │
  │  2. 価格計算 (Pricing Engine)                失敗 → 中断     │
  │  3. バリアントごとに在庫引き当て (Ledger)                    │
  │     └─ 失敗 → 引き当て済みをすべて解放 (補償)                │
  │  4. Order + Transaction を保存                               │
  │     └─ 失敗 → 在庫を解放 (補償)                              │
  │  5. 代引き (cod): 確認通知を切り離して送信 → 完了            │
  │  6. オンライン決済: ゲートウェイに支払い予定を作成           │
  │     ├─ 成功 → 参照を保存、確認通知 → 完了                    │
  │     └─ 失敗 → Order/Transaction を削除 + 在庫を解放 (補償)   │
  └──────────────────────────────────────────────────────────────┘

自動リトライはしない。再送はユーザー (フォーム再送信) の責任で、
そのたびに新しい Saga が新しい引き当てから始まる。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import ledger, orders, pricing, resolver, store_settings
from .errors import CheckoutError, PersistenceFailure
from .events import SagaFinished
from .gateway import PaymentGateway
from .models import (
    CartLine,
    CustomerInfo,
    GatewayIntent,
    PaymentMethod,
    PlaceOrderResult,
    ShippingAddress,
)
from .notifications import NotificationSender, build_confirmation, dispatch_order_confirmation
from .publisher import SAGA_CHANNEL, publish_quietly

logger = logging.getLogger(__name__)

COD_MESSAGE = "Order placed successfully. Our team will contact you shortly."


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        notifier: NotificationSender,
        publisher=None,
        currency: str = "INR",
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.publisher = publisher
        self.currency = currency

    async def place_order(
        self,
        cart: list[CartLine],
        customer: CustomerInfo,
        address: ShippingAddress,
        payment_method: PaymentMethod,
        notes: str = "",
    ) -> PlaceOrderResult:
        """
        Saga を実行する。

        一度始まったら必ず終端状態 (成功 or 完全な補償) まで走る。
        補償は各ステップのエラーでのみ駆動される。
        """
        saga_log: list[dict] = []
        reserved: list[tuple[str, int]] = []

        # ── Step 1: カートを解決 ────────────────────
        self._begin(saga_log, 1, "ResolveCart")
        try:
            async with self.session_factory() as session:
                lines = await resolver.resolve(session, cart)
                tax_config = await store_settings.get_tax_config(session)
                shipping_config = await store_settings.get_shipping_config(session)
        except Exception as e:
            self._failed(saga_log, e)
            await self._publish_saga_event("SagaFailed", None, saga_log, e)
            raise
        self._completed(saga_log)

        # ── Step 2: 価格計算 ────────────────────────
        self._begin(saga_log, 2, "PriceCart")
        try:
            breakdown = pricing.price(lines, tax_config, shipping_config)
        except Exception as e:
            self._failed(saga_log, e)
            await self._publish_saga_event("SagaFailed", None, saga_log, e)
            raise
        self._completed(saga_log)

        # ── Step 3: 在庫を引き当て ──────────────────
        # 同じバリアントの行は合算して1回だけ引き当てる
        self._begin(saga_log, 3, "ReserveInventory")
        try:
            for variant_id, quantity in ledger.aggregate_reservations(lines).items():
                async with self.session_factory() as session:
                    await ledger.reserve(session, variant_id, quantity)
                reserved.append((variant_id, quantity))
        except Exception as e:
            self._failed(saga_log, e)
            await self._compensate(saga_log, reserved)
            await self._publish_saga_event("SagaCompensated", None, saga_log, e)
            raise
        self._completed(saga_log)

        # ── Step 4: Order + Transaction を保存 ──────
        self._begin(saga_log, 4, "PersistOrder")
        order = None
        try:
            async with self.session_factory() as session:
                order = await orders.create_order(
                    session,
                    customer=customer.model_dump(include={"name", "email", "phone"}),
                    shipping_address=address.model_dump(),
                    items=[line.snapshot() for line in lines],
                    subtotal=breakdown.subtotal,
                    tax=breakdown.tax,
                    shipping=breakdown.shipping,
                    total=breakdown.total,
                    currency=self.currency,
                    payment_method=payment_method,
                    notes=notes,
                    user_id=customer.user_id,
                )
                transaction = await orders.create_transaction(
                    session,
                    order_id=order["id"],
                    amount=breakdown.total,
                    currency=self.currency,
                    payment_method=payment_method,
                    gateway=self.gateway.name if payment_method == "online" else "manual",
                )
        except Exception as e:
            self._failed(saga_log, e)
            if order is not None:
                await self._delete_records(saga_log, order["id"], None)
            await self._compensate(saga_log, reserved)
            await self._publish_saga_event("SagaCompensated", None, saga_log, e)
            if isinstance(e, SQLAlchemyError):
                raise PersistenceFailure(str(e)) from e
            raise
        self._completed(saga_log)

        # ── Step 5: 代引き → 確認通知を送って完了 ───
        if payment_method == "cod":
            dispatch_order_confirmation(self.notifier, build_confirmation(order))
            await self._publish_saga_event("SagaCompleted", order["id"], saga_log)
            logger.info("Saga completed for COD order %s", order["id"])
            return PlaceOrderResult(
                order_id=order["id"],
                transaction_id=transaction["id"],
                total=breakdown.total,
                currency=self.currency,
                payment_method=payment_method,
                message=COD_MESSAGE,
                saga_log=saga_log,
            )

        # ── Step 6: ゲートウェイに支払い予定を作成 ──
        self._begin(saga_log, 6, "CreatePaymentIntent")
        amount_minor = pricing.to_minor_units(breakdown.total)
        try:
            intent = await self.gateway.create_payment_intent(
                amount_minor,
                self.currency,
                order["id"],
                {
                    "order_id": order["id"],
                    "customer_name": customer.name,
                    "customer_email": customer.email,
                },
            )
            public_key = self.gateway.public_key
            async with self.session_factory() as session:
                await orders.update_order(session, order["id"], {"gateway_order_id": intent.intent_id})
                await orders.update_latest_transaction_for_order(
                    session,
                    order["id"],
                    {"gateway_order_id": intent.intent_id, "status": "pending"},
                )
        except Exception as e:
            # 決済経路の無い注文は注文ではない → 行ごと削除する
            self._failed(saga_log, e)
            await self._delete_records(saga_log, order["id"], transaction["id"])
            await self._compensate(saga_log, reserved)
            await self._publish_saga_event("SagaCompensated", order["id"], saga_log, e)
            if isinstance(e, SQLAlchemyError):
                raise PersistenceFailure(str(e)) from e
            raise
        self._completed(saga_log)

        order["gateway_order_id"] = intent.intent_id
        dispatch_order_confirmation(self.notifier, build_confirmation(order))
        await self._publish_saga_event("SagaCompleted", order["id"], saga_log)
        logger.info("Saga completed for online order %s (intent %s)", order["id"], intent.intent_id)

        return PlaceOrderResult(
            order_id=order["id"],
            transaction_id=transaction["id"],
            total=breakdown.total,
            currency=self.currency,
            payment_method=payment_method,
            gateway_intent=GatewayIntent(
                intent_id=intent.intent_id,
                amount=amount_minor,
                currency=intent.currency,
                key=public_key,
                customer={
                    "name": customer.name,
                    "email": customer.email,
                    "phone": customer.phone,
                },
            ),
            saga_log=saga_log,
        )

    # ── 補償トランザクション ─────────────────────

    async def _compensate(self, saga_log: list[dict], reserved: list[tuple[str, int]]) -> None:
        """
        引き当て済みの在庫をすべて戻す。加算は可換なので順序は問わない。
        一件の解放に失敗しても残りの解放は続ける。
        """
        for variant_id, quantity in reserved:
            entry = self._begin(saga_log, len(saga_log) + 1, f"ReleaseInventory {variant_id} (COMPENSATING)")
            try:
                async with self.session_factory() as session:
                    await ledger.release(session, variant_id, quantity)
                entry["status"] = "COMPENSATED"
            except Exception as e:
                entry["status"] = "FAILED"
                entry["error"] = str(e)
                logger.exception(
                    "Compensation failed: could not release %d of variant %s", quantity, variant_id
                )

    async def _delete_records(
        self,
        saga_log: list[dict],
        order_id: str,
        transaction_id: str | None,
    ) -> None:
        entry = self._begin(saga_log, len(saga_log) + 1, "DeleteOrder (COMPENSATING)")
        try:
            async with self.session_factory() as session:
                if transaction_id is not None:
                    await orders.delete_transaction(session, transaction_id)
                await orders.delete_order(session, order_id)
            entry["status"] = "COMPENSATED"
        except Exception as e:
            entry["status"] = "FAILED"
            entry["error"] = str(e)
            logger.exception("Compensation failed: could not delete order %s", order_id)

    # ── Saga ログ ─────────────────────────────────

    @staticmethod
    def _begin(saga_log: list[dict], step: int, action: str) -> dict:
        entry = {"step": step, "action": action, "status": "EXECUTING", "timestamp": _now()}
        saga_log.append(entry)
        return entry

    @staticmethod
    def _completed(saga_log: list[dict]) -> None:
        saga_log[-1]["status"] = "COMPLETED"

    @staticmethod
    def _failed(saga_log: list[dict], error: Exception) -> None:
        saga_log[-1]["status"] = "FAILED"
        saga_log[-1]["error"] = error.code if isinstance(error, CheckoutError) else str(error)

    async def _publish_saga_event(
        self,
        event_type: str,
        order_id: str | None,
        saga_log: list[dict],
        error: Exception | None = None,
    ) -> None:
        """Saga のイベントを Redis に発行する。"""
        if error is not None:
            logger.info("Saga %s: %s", event_type, error)
        error_code = None
        if error is not None:
            error_code = error.code if isinstance(error, CheckoutError) else type(error).__name__
        await publish_quietly(
            self.publisher,
            SAGA_CHANNEL,
            event_type,
            SagaFinished(
                event_type=event_type,
                order_id=order_id,
                error=error_code,
                saga_log=saga_log,
                timestamp=datetime.now(timezone.utc),
            ),
        )
