"""Pricing Engine と税・送料設定の正規化"""

from decimal import Decimal

import pytest

from app import store_settings
from app.errors import EmptyCartTotal
from app.models import ResolvedLine, ShippingConfig, TaxConfig
from app.pricing import price, to_minor_units


def line(unit_price: str, quantity: int = 1) -> ResolvedLine:
    return ResolvedLine(
        product_id="p-1",
        variant_id="v-1",
        variant_label="Base",
        unit_price=Decimal(unit_price),
        quantity=quantity,
        name="Refurbished laptop",
    )


GST_18 = TaxConfig(enabled=True, rate_percent=Decimal("18"))
NO_TAX = TaxConfig(enabled=False, rate_percent=Decimal("18"))
NO_SHIPPING = ShippingConfig(enabled=False, flat_amount=Decimal("0"))


class TestPrice:
    def test_tax_on_subtotal(self):
        breakdown = price([line("25000", 2)], GST_18, NO_SHIPPING)

        assert breakdown.subtotal == Decimal("50000.00")
        assert breakdown.tax == Decimal("9000.00")
        assert breakdown.shipping == Decimal("0.00")
        assert breakdown.total == Decimal("59000.00")

    def test_tax_rounds_half_up(self):
        # 0.25 × 18% = 0.045 → 0.05
        breakdown = price([line("0.25")], GST_18, NO_SHIPPING)

        assert breakdown.tax == Decimal("0.05")
        assert breakdown.total == Decimal("0.30")

    def test_total_is_sum_of_rounded_components(self):
        shipping = ShippingConfig(enabled=True, flat_amount=Decimal("49.999"))
        breakdown = price([line("10.05")], GST_18, shipping)

        assert breakdown.tax == Decimal("1.81")
        assert breakdown.shipping == Decimal("50.00")
        assert breakdown.total == breakdown.subtotal + breakdown.tax + breakdown.shipping
        assert breakdown.total == Decimal("61.86")

    def test_subtotal_rounded_once(self):
        # 3 × 0.335 = 1.005 → 1.01 (行ごとに丸めると 1.02 になる)
        breakdown = price([line("0.335"), line("0.335"), line("0.335")], NO_TAX, NO_SHIPPING)

        assert breakdown.subtotal == Decimal("1.01")

    def test_disabled_tax_and_enabled_shipping(self):
        shipping = ShippingConfig(enabled=True, flat_amount=Decimal("99"))
        breakdown = price([line("1200", 3)], NO_TAX, shipping)

        assert breakdown.tax == Decimal("0.00")
        assert breakdown.shipping == Decimal("99.00")
        assert breakdown.total == Decimal("3699.00")

    def test_zero_subtotal_rejected(self):
        with pytest.raises(EmptyCartTotal):
            price([line("0", 2)], GST_18, NO_SHIPPING)

    def test_empty_cart_rejected(self):
        with pytest.raises(EmptyCartTotal):
            price([], GST_18, NO_SHIPPING)


class TestMinorUnits:
    def test_converts_to_paise(self):
        assert to_minor_units(Decimal("59000.00")) == 5900000

    def test_rounds_half_up(self):
        assert to_minor_units(Decimal("10.005")) == 1001


class TestStoreSettings:
    def test_tax_rate_clamped(self):
        assert store_settings.normalize_tax(True, "150").rate_percent == Decimal("100")
        assert store_settings.normalize_tax(True, "-5").rate_percent == Decimal("0")

    def test_invalid_tax_rate_falls_back_to_default(self):
        assert store_settings.normalize_tax(None, "abc") == store_settings.DEFAULT_TAX

    def test_negative_shipping_clamped(self):
        config = store_settings.normalize_shipping(True, "-40")
        assert config.enabled is True
        assert config.flat_amount == Decimal("0")

    async def test_defaults_when_no_row(self, session_factory):
        async with session_factory() as session:
            assert await store_settings.get_tax_config(session) == store_settings.DEFAULT_TAX
            assert await store_settings.get_shipping_config(session) == store_settings.DEFAULT_SHIPPING

    async def test_saved_settings_are_read_back(self, session_factory):
        async with session_factory() as session:
            await store_settings.save_store_settings(
                session,
                TaxConfig(enabled=False, rate_percent=Decimal("12")),
                ShippingConfig(enabled=True, flat_amount=Decimal("150")),
            )

        async with session_factory() as session:
            tax = await store_settings.get_tax_config(session)
            shipping = await store_settings.get_shipping_config(session)

        assert tax.enabled is False
        assert tax.rate_percent == Decimal("12")
        assert shipping == ShippingConfig(enabled=True, flat_amount=Decimal("150"))
