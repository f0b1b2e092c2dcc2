"""
Checkout Service — 通知サブスクライバー

order_notifications チャネルを購読し、受信した送信依頼ごとに
注文確認メールを送る。メール送信の失敗はログに残すだけで、
注文や決済の状態には一切影響しない。

注意: Redis Pub/Sub は fire-and-forget 方式。
サブスクライバーが停止している間の依頼は失われる。
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis

from .config import Settings
from .events import OrderConfirmationRequested
from .mailer import send_order_confirmation_email
from .publisher import NOTIFICATION_CHANNEL

logger = logging.getLogger(__name__)


async def handle_message(raw: str, settings: Settings) -> None:
    event = json.loads(raw)
    if event.get("event_type") != "OrderConfirmationRequested":
        return
    payload = OrderConfirmationRequested.model_validate(event.get("data", {}))
    await send_order_confirmation_email(payload, settings)


async def run_subscriber(
    redis_url: str,
    settings: Settings,
    shutdown_event: asyncio.Event,
) -> None:
    """
    order_notifications を購読し、メールを送信する。
    shutdown_event がセットされるまで無限ループで待機する。
    """
    redis_conn = aioredis.from_url(redis_url, decode_responses=True)
    pubsub = redis_conn.pubsub()
    await pubsub.subscribe(NOTIFICATION_CHANNEL)
    logger.info("Subscribed to %s channel", NOTIFICATION_CHANNEL)

    try:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "message":
                try:
                    await handle_message(message["data"], settings)
                except Exception:
                    logger.exception("Failed to deliver order notification")
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.unsubscribe(NOTIFICATION_CHANNEL)
        await pubsub.aclose()
        await redis_conn.aclose()
