"""
Checkout Service — データ構造

カタログ側のレコードは形が緩いので、ここで必須フィールドを持つ
検証済みの構造に写像する。検証に通らないバリアントは解決時に除外する。
"""

from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator

# JSON では数値として返す (内部計算は Decimal)
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

PaymentMethod = Literal["cod", "online"]
PaymentStatus = Literal["pending", "paid", "failed"]

FALLBACK_VARIANT_LABEL = "Base configuration"


def _blank_to_none(value):
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


# ── 入力 (カート・顧客) ──────────────────────────


class CartLine(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)
    variant: str | None = None
    color: str | None = None

    strip_selectors = field_validator("variant", "color", mode="before")(_blank_to_none)


class CustomerInfo(BaseModel):
    name: str
    email: str
    phone: str
    user_id: str | None = None

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.strip().lower()


class ShippingAddress(BaseModel):
    line1: str
    line2: str = ""
    city: str
    state: str
    postal_code: str
    country: str = "India"


# ── カタログ ─────────────────────────────────────


class Product(BaseModel):
    id: str
    name: str
    category: str = ""
    image_url: str | None = None
    condition: str = "refurbished"


class Variant(BaseModel):
    """
    価格・在庫を持つ製品の構成。

    label が空、price が負数/非有限の場合は ValidationError になり、
    Catalog Resolver がそのレコードを捨てる。
    """

    id: str | None
    product_id: str
    label: str = Field(min_length=1)
    price: Decimal = Field(ge=0, allow_inf_nan=False)
    original_price: Decimal | None = None
    discounted_price: Decimal | None = None
    on_sale: bool = False
    stock: int = 0
    in_stock: bool | None = None
    is_default: bool = False
    color: str | None = None
    image_url: str | None = None
    condition: str | None = None

    strip_optionals = field_validator("color", "image_url", "condition", mode="before")(_blank_to_none)

    @field_validator("label", mode="before")
    @classmethod
    def strip_label(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("stock", mode="before")
    @classmethod
    def clamp_stock(cls, value):
        try:
            return max(0, int(value))
        except (TypeError, ValueError, OverflowError):
            return 0

    @field_validator("original_price", "discounted_price", mode="before")
    @classmethod
    def drop_bad_price(cls, value):
        if value is None:
            return None
        try:
            number = Decimal(str(value))
        except ArithmeticError:
            return None
        if not number.is_finite() or number < 0:
            return None
        return number

    def model_post_init(self, __context) -> None:
        if self.in_stock is None:
            self.in_stock = self.stock > 0

    @property
    def unit_price(self) -> Decimal:
        """セール中かつ割引価格が元値より安い場合のみ割引価格を使う。"""
        original = self.original_price if self.original_price is not None else self.price
        discounted = self.discounted_price
        if self.on_sale and discounted is not None and 0 < discounted < original:
            return discounted
        return self.price

    @classmethod
    def fallback(cls, product_id: str) -> "Variant":
        return cls(
            id=None,
            product_id=product_id,
            label=FALLBACK_VARIANT_LABEL,
            price=Decimal("0"),
            stock=0,
            in_stock=False,
            is_default=True,
        )


class ResolvedLine(BaseModel):
    product_id: str
    variant_id: str | None
    variant_label: str
    unit_price: Money
    quantity: int
    color: str | None = None
    name: str
    image_url: str | None = None
    category: str = ""
    condition: str = "refurbished"
    available_stock: int = 0

    def snapshot(self) -> dict:
        """注文に凍結保存する明細のコピー。"""
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "name": self.name,
            "price": float(self.unit_price),
            "quantity": self.quantity,
            "image_url": self.image_url or "",
            "category": self.category,
            "condition": self.condition,
            "color": self.color or "",
            "variant": self.variant_label,
        }


# ── 価格計算 ─────────────────────────────────────


class TaxConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    rate_percent: Decimal = Decimal("18")


class ShippingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    flat_amount: Decimal = Decimal("0")


class PriceBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: Money
    tax: Money
    shipping: Money
    total: Money


# ── 在庫・結果 ───────────────────────────────────


class Reservation(BaseModel):
    variant_id: str
    quantity: int
    remaining_stock: int


class GatewayIntent(BaseModel):
    intent_id: str
    amount: int
    currency: str
    key: str
    customer: dict[str, str]


class PlaceOrderResult(BaseModel):
    order_id: str
    transaction_id: str
    total: Money
    currency: str
    payment_method: PaymentMethod
    message: str | None = None
    gateway_intent: GatewayIntent | None = None
    saga_log: list[dict] = Field(default_factory=list, exclude=True)


class VerificationResult(BaseModel):
    order_id: str
    transaction_id: str | None
    payment_status: PaymentStatus
    message: str = "Payment verified"
