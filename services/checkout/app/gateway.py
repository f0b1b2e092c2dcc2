"""
Checkout Service — 決済ゲートウェイ

ゲートウェイのインターフェース (PaymentGateway) と実装:
  - RazorpayGateway: Razorpay Orders API を httpx で呼ぶ本番用
  - FakeGateway:     外部呼び出しをしない開発・テスト用

署名検証は HMAC-SHA256(secret, "{gateway_order_id}|{gateway_payment_id}")
の16進表現と比較する。比較は必ず定数時間 (hmac.compare_digest)。
秘密鍵はサーバー側でのみ使い、クライアントには公開鍵 (key id) だけを渡す。
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import uuid4

import httpx

from .errors import GatewayError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntent:
    """ゲートウェイ側に作られた「支払い予定」"""

    intent_id: str
    amount: int
    currency: str


def compute_signature(secret: str, gateway_order_id: str, gateway_payment_id: str) -> str:
    payload = f"{gateway_order_id}|{gateway_payment_id}".encode()
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def signatures_match(expected: str, supplied: str) -> bool:
    return hmac.compare_digest(expected.encode(), supplied.encode())


class PaymentGateway(ABC):
    name: str = "gateway"

    @property
    @abstractmethod
    def public_key(self) -> str:
        """クライアントの決済ウィジェット初期化に使う公開鍵"""

    @abstractmethod
    async def create_payment_intent(
        self,
        amount_minor: int,
        currency: str,
        receipt_id: str,
        metadata: dict[str, str],
    ) -> PaymentIntent:
        """金額 (最小通貨単位) の支払い予定をゲートウェイに作成する。"""

    @abstractmethod
    def verify_signature(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> bool:
        """コールバックの署名がゲートウェイ由来か検証する。"""

    async def aclose(self) -> None:
        return None


class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    def __init__(
        self,
        key_id: str | None,
        key_secret: str | None,
        api_url: str = "https://api.razorpay.com/v1",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.key_id = key_id
        self.key_secret = key_secret
        self.api_url = api_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _require_credentials(self) -> tuple[str, str]:
        if not self.key_id or not self.key_secret:
            raise GatewayError(
                "Razorpay credentials are not configured. "
                "Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )
        return self.key_id, self.key_secret

    @property
    def public_key(self) -> str:
        key_id, _ = self._require_credentials()
        return key_id

    async def create_payment_intent(
        self,
        amount_minor: int,
        currency: str,
        receipt_id: str,
        metadata: dict[str, str],
    ) -> PaymentIntent:
        key_id, key_secret = self._require_credentials()
        try:
            resp = await self._client.post(
                f"{self.api_url}/orders",
                json={
                    "amount": amount_minor,
                    "currency": currency,
                    "receipt": receipt_id,
                    "notes": metadata,
                },
                auth=(key_id, key_secret),
            )
            resp.raise_for_status()
            data = resp.json()
            intent = PaymentIntent(
                intent_id=str(data["id"]),
                amount=int(data.get("amount", amount_minor)),
                currency=data.get("currency", currency),
            )
        except httpx.HTTPStatusError as e:
            raise GatewayError(
                f"Razorpay order creation failed: {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Razorpay request failed: {e!r}") from e
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise GatewayError(f"Unexpected Razorpay response: {e!r}") from e

        logger.info("Created Razorpay order %s for receipt %s", intent.intent_id, receipt_id)
        return intent

    def verify_signature(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> bool:
        _, key_secret = self._require_credentials()
        expected = compute_signature(key_secret, gateway_order_id, gateway_payment_id)
        return signatures_match(expected, signature)

    async def aclose(self) -> None:
        await self._client.aclose()


class FakeGateway(PaymentGateway):
    """実行時に成功/失敗を切り替えられる偽ゲートウェイ"""

    name = "razorpay"

    def __init__(self, key_secret: str = "fake_secret", key_id: str = "rzp_test_fake") -> None:
        self.key_id = key_id
        self.key_secret = key_secret
        self.should_succeed: bool = True
        self.failure_reason: str = "Gateway unavailable"
        self.calls: list[dict] = []

    def configure(self, should_succeed: bool, failure_reason: str = "Gateway unavailable") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    @property
    def public_key(self) -> str:
        return self.key_id

    async def create_payment_intent(
        self,
        amount_minor: int,
        currency: str,
        receipt_id: str,
        metadata: dict[str, str],
    ) -> PaymentIntent:
        self.calls.append(
            {
                "method": "create_payment_intent",
                "amount_minor": amount_minor,
                "currency": currency,
                "receipt_id": receipt_id,
                "metadata": metadata,
            }
        )
        if not self.should_succeed:
            raise GatewayError(self.failure_reason)
        return PaymentIntent(
            intent_id=f"order_fake_{uuid4().hex[:14]}",
            amount=amount_minor,
            currency=currency,
        )

    def sign(self, gateway_order_id: str, gateway_payment_id: str) -> str:
        """テスト用: 正しい署名を作る"""
        return compute_signature(self.key_secret, gateway_order_id, gateway_payment_id)

    def verify_signature(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> bool:
        return signatures_match(self.sign(gateway_order_id, gateway_payment_id), signature)
