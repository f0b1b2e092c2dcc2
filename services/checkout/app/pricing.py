"""
Checkout Service — 価格計算 (Pricing Engine)

  subtotal = Σ(単価 × 数量)  → 最後に一度だけ小数2桁へ丸める
  tax      = subtotal × 税率  (有効時のみ) → 小数2桁
  shipping = 定額送料        (有効時のみ) → 小数2桁
  total    = subtotal + tax + shipping  (丸め済みの和。再丸めしない)

税・送料の設定は引数で受け取る。
"""

from decimal import ROUND_HALF_UP, Decimal

from .errors import EmptyCartTotal
from .models import PriceBreakdown, ResolvedLine, ShippingConfig, TaxConfig

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """通貨の最小単位 (INR ならパイサ) に変換する。"""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def price(
    lines: list[ResolvedLine],
    tax_config: TaxConfig,
    shipping_config: ShippingConfig,
) -> PriceBreakdown:
    raw_subtotal = sum((line.unit_price * line.quantity for line in lines), Decimal("0"))
    subtotal = round_money(raw_subtotal)
    if subtotal <= 0:
        raise EmptyCartTotal(f"subtotal={subtotal}")

    tax = round_money(subtotal * tax_config.rate_percent / 100) if tax_config.enabled else ZERO
    shipping = round_money(shipping_config.flat_amount) if shipping_config.enabled else ZERO

    return PriceBreakdown(
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        total=subtotal + tax + shipping,
    )
