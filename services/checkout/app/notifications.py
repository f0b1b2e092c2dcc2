"""
Checkout Service — 注文確認通知

Saga の終端状態がコミットされた後に、確認メールの送信依頼を
切り離されたタスクとして発行する (await しない)。
通知の失敗がチェックアウトの結果に影響することはない。

  Saga ──create_task──▶ NotificationSender ──▶ Redis (order_notifications)
                                                   │
                                         subscriber.py が購読して SMTP 送信
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from .events import OrderConfirmationRequested, OrderEmailItem
from .publisher import NOTIFICATION_CHANNEL

logger = logging.getLogger(__name__)

PAYMENT_METHOD_LABELS = {"cod": "Cash on delivery", "online": "Online payment"}

# GC で消えないよう実行中のタスクを保持する (完了時に自分で外れる)
_pending: set[asyncio.Task] = set()


class NotificationSender(ABC):
    @abstractmethod
    async def send_order_confirmation(self, payload: OrderConfirmationRequested) -> None:
        ...


class PublishingNotificationSender(NotificationSender):
    """送信依頼を order_notifications チャネルに発行する。"""

    def __init__(self, publisher) -> None:
        self.publisher = publisher

    async def send_order_confirmation(self, payload: OrderConfirmationRequested) -> None:
        await self.publisher.publish(NOTIFICATION_CHANNEL, "OrderConfirmationRequested", payload)


def order_number(order_id: str) -> str:
    return order_id[-6:].upper()


def build_confirmation(order: dict) -> OrderConfirmationRequested:
    items = [
        OrderEmailItem(
            name=item["name"],
            quantity=item["quantity"],
            price=item["price"],
            total=round(item["price"] * item["quantity"], 2),
            color=item.get("color") or None,
        )
        for item in order["items"]
    ]
    return OrderConfirmationRequested(
        to=order["customer_email"],
        customer_name=order["customer_name"],
        order_id=order["id"],
        order_number=order_number(order["id"]),
        status=order["status"],
        payment_method=PAYMENT_METHOD_LABELS.get(order["payment_method"], order["payment_method"]),
        payment_status=order["payment_status"],
        total=float(order["total"]),
        currency=order["currency"],
        items=items,
        shipping_address={k: str(v or "") for k, v in order["shipping_address"].items()},
        timestamp=datetime.now(timezone.utc),
    )


def _on_done(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Order confirmation dispatch failed", exc_info=exc)


def dispatch_order_confirmation(
    sender: NotificationSender,
    payload: OrderConfirmationRequested,
) -> asyncio.Task:
    """確認通知を fire-and-forget で送る。"""
    task = asyncio.create_task(sender.send_order_confirmation(payload))
    _pending.add(task)
    task.add_done_callback(_on_done)
    return task


async def drain() -> None:
    """実行中の通知タスクの完了を待つ (シャットダウン時)。"""
    if _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
