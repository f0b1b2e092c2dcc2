"""
Checkout Service — ストア設定 (税・送料)

store_settings テーブルの key='store' 行を読む。行が無ければ既定値
(GST 18% 有効、送料無効) を返す。値は読み込み時に正規化する。
Pricing Engine はこの結果を引数として受け取り、自分では読みに行かない。
"""

from decimal import Decimal, InvalidOperation

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import ShippingConfig, TaxConfig
from .schema import store_settings

SETTINGS_KEY = "store"

DEFAULT_TAX = TaxConfig(enabled=True, rate_percent=Decimal("18"))
DEFAULT_SHIPPING = ShippingConfig(enabled=False, flat_amount=Decimal("0"))


def _decimal(value, fallback: Decimal) -> Decimal:
    try:
        number = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return fallback
    return number if number.is_finite() else fallback


def normalize_tax(enabled, rate) -> TaxConfig:
    rate_percent = min(Decimal("100"), max(Decimal("0"), _decimal(rate, DEFAULT_TAX.rate_percent)))
    return TaxConfig(
        enabled=DEFAULT_TAX.enabled if enabled is None else bool(enabled),
        rate_percent=rate_percent,
    )


def normalize_shipping(enabled, amount) -> ShippingConfig:
    flat_amount = max(Decimal("0"), _decimal(amount, DEFAULT_SHIPPING.flat_amount))
    return ShippingConfig(
        enabled=DEFAULT_SHIPPING.enabled if enabled is None else bool(enabled),
        flat_amount=flat_amount,
    )


async def _load(session: AsyncSession):
    result = await session.execute(
        select(store_settings).where(store_settings.c.key == SETTINGS_KEY)
    )
    return result.fetchone()


async def get_tax_config(session: AsyncSession) -> TaxConfig:
    row = await _load(session)
    if row is None:
        return DEFAULT_TAX
    return normalize_tax(row.gst_enabled, row.gst_rate)


async def get_shipping_config(session: AsyncSession) -> ShippingConfig:
    row = await _load(session)
    if row is None:
        return DEFAULT_SHIPPING
    return normalize_shipping(row.shipping_enabled, row.shipping_amount)


async def save_store_settings(
    session: AsyncSession,
    tax: TaxConfig,
    shipping: ShippingConfig,
) -> None:
    """設定を upsert する (管理画面・シード用)"""
    values = {
        "gst_enabled": tax.enabled,
        "gst_rate": normalize_tax(tax.enabled, tax.rate_percent).rate_percent,
        "shipping_enabled": shipping.enabled,
        "shipping_amount": normalize_shipping(shipping.enabled, shipping.flat_amount).flat_amount,
    }
    if await _load(session) is None:
        await session.execute(store_settings.insert().values(key=SETTINGS_KEY, **values))
    else:
        await session.execute(
            update(store_settings).where(store_settings.c.key == SETTINGS_KEY).values(**values)
        )
    await session.commit()
