"""
Checkout Service — 決済検証

ブラウザ経由で届く決済完了コールバックは信用できない入力なので、
ゲートウェイの秘密鍵で HMAC 署名を検証してから Order / Transaction の
支払い状態を遷移させる。

  - 検証は冪等: 同じ正しい入力を何度受けても終端状態は同じで、
    余計な副作用 (書き込み・イベント) は発生しない
  - 在庫には触らない。通知も送らない
  - 支払い済みの注文を不正な署名で failed に戻すことはしない
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import orders
from .errors import GatewayOrderMismatch, OrderNotFound, OrderNotOnlinePayment, SignatureInvalid
from .events import PaymentVerificationFailed, PaymentVerified
from .gateway import PaymentGateway
from .models import VerificationResult
from .publisher import PAYMENT_CHANNEL, publish_quietly

logger = logging.getLogger(__name__)


class PaymentVerifier:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        publisher=None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.publisher = publisher

    async def verify(
        self,
        order_id: str,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        raw_payload: dict | None = None,
    ) -> VerificationResult:
        async with self.session_factory() as session:
            order = await orders.find_order_by_id(session, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            if not order["gateway_order_id"]:
                raise OrderNotOnlinePayment(order_id)
            if order["gateway_order_id"] != gateway_order_id:
                raise GatewayOrderMismatch(
                    f"order {order_id} expects {order['gateway_order_id']}, got {gateway_order_id}"
                )

            if not self.gateway.verify_signature(gateway_order_id, gateway_payment_id, signature):
                await self._record_failure(session, order, gateway_payment_id, signature, raw_payload)
                await publish_quietly(
                    self.publisher,
                    PAYMENT_CHANNEL,
                    "PaymentVerificationFailed",
                    PaymentVerificationFailed(
                        order_id=order_id,
                        gateway_order_id=gateway_order_id,
                        gateway_payment_id=gateway_payment_id,
                        timestamp=datetime.now(timezone.utc),
                    ),
                )
                raise SignatureInvalid(f"order {order_id}, payment {gateway_payment_id}")

            # 同じ支払いで既に paid なら何もしない (同時に届いた同じコールバックも含む)
            already_paid = (
                order["payment_status"] == "paid"
                and order["gateway_payment_id"] == gateway_payment_id
            )
            if already_paid or not await orders.mark_order_paid(
                session, order_id, gateway_payment_id, signature
            ):
                latest = await orders.find_transactions_for_order(session, order_id)
                logger.info("Payment for order %s already verified", order_id)
                return VerificationResult(
                    order_id=order_id,
                    transaction_id=latest[0]["id"] if latest else None,
                    payment_status="paid",
                )

            transaction_id = await orders.update_latest_transaction_for_order(
                session,
                order_id,
                {
                    "status": "paid",
                    "gateway_order_id": gateway_order_id,
                    "gateway_payment_id": gateway_payment_id,
                    "gateway_signature": signature,
                    "raw_payload": raw_payload,
                },
            )

        logger.info("Payment %s verified for order %s", gateway_payment_id, order_id)
        await publish_quietly(
            self.publisher,
            PAYMENT_CHANNEL,
            "PaymentVerified",
            PaymentVerified(
                order_id=order_id,
                gateway_order_id=gateway_order_id,
                gateway_payment_id=gateway_payment_id,
                timestamp=datetime.now(timezone.utc),
            ),
        )
        return VerificationResult(order_id=order_id, transaction_id=transaction_id, payment_status="paid")

    async def _record_failure(
        self,
        session: AsyncSession,
        order: dict,
        gateway_payment_id: str,
        signature: str,
        raw_payload: dict | None,
    ) -> None:
        fields = {
            "status": "failed",
            "gateway_order_id": order["gateway_order_id"],
            "gateway_payment_id": gateway_payment_id,
            "gateway_signature": signature,
            "raw_payload": raw_payload,
        }
        logger.warning(
            "Signature mismatch for order %s (payment %s)", order["id"], gateway_payment_id
        )
        if order["payment_status"] == "paid":
            # 支払い済みは書き換えず、失敗した試行を別の行として残す
            await orders.append_transaction(session, order, fields, self.gateway.name)
            return

        await orders.update_order(session, order["id"], {"payment_status": "failed"})
        await orders.update_latest_transaction_for_order(session, order["id"], fields)
