"""
Checkout Service — イベント定義

Redis Pub/Sub で発行するイベント。過去形 / 依頼形で命名し、不変として扱う。
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class OrderEmailItem(BaseModel):
    name: str
    quantity: int
    price: float
    total: float
    color: str | None = None


class OrderConfirmationRequested(BaseModel):
    """注文確認メールの送信依頼（送信は非同期・ベストエフォート）"""
    to: str
    customer_name: str
    order_id: str
    order_number: str
    status: str
    payment_method: str
    payment_status: str
    total: float
    currency: str
    items: list[OrderEmailItem]
    shipping_address: dict[str, str]
    timestamp: datetime


class SagaFinished(BaseModel):
    """Saga が終端状態に達した（完了 / 補償済み / 失敗）"""
    event_type: Literal["SagaCompleted", "SagaCompensated", "SagaFailed"]
    order_id: str | None
    error: str | None = None
    saga_log: list[dict]
    timestamp: datetime


class PaymentVerified(BaseModel):
    """決済の署名検証が成功した"""
    order_id: str
    gateway_order_id: str
    gateway_payment_id: str
    timestamp: datetime


class PaymentVerificationFailed(BaseModel):
    """決済の署名検証が失敗した"""
    order_id: str
    gateway_order_id: str
    gateway_payment_id: str
    timestamp: datetime
