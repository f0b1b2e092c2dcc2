"""
Checkout Service — イベント発行

Redis Pub/Sub にイベントを発行する。メッセージ形式は
{"event_type": ..., "data": {...}}。

注意: Redis Pub/Sub は fire-and-forget 方式。購読者が落ちている間の
メッセージは失われる。発行の失敗がチェックアウトの結果を変えては
いけないので、呼び出し側はベストエフォートとして扱う。
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

SAGA_CHANNEL = "saga_events"
PAYMENT_CHANNEL = "payment_events"
NOTIFICATION_CHANNEL = "order_notifications"


def encode(event_type: str, event: BaseModel) -> str:
    return json.dumps({"event_type": event_type, "data": event.model_dump(mode="json")})


class EventPublisher:
    """Redis に発行するパブリッシャ"""

    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def publish(self, channel: str, event_type: str, event: BaseModel) -> None:
        await self.redis.publish(channel, encode(event_type, event))


class InMemoryPublisher:
    """Redis を使わない環境 (ローカル・テスト) 用。発行内容を保持するだけ。"""

    def __init__(self) -> None:
        self.messages: list[tuple[str, dict]] = []

    async def publish(self, channel: str, event_type: str, event: BaseModel) -> None:
        self.messages.append((channel, json.loads(encode(event_type, event))))

    def of_type(self, event_type: str) -> list[dict]:
        return [m["data"] for _, m in self.messages if m["event_type"] == event_type]


async def publish_quietly(publisher, channel: str, event_type: str, event: BaseModel) -> None:
    """発行に失敗してもログに残すだけで例外は伝播させない。"""
    if publisher is None:
        return
    try:
        await publisher.publish(channel, event_type, event)
    except Exception:
        logger.exception("Failed to publish %s on %s", event_type, channel)
