"""
Checkout Service — カタログリゾルバ (Catalog Resolver)

カートの各行を、価格と在庫を持つ具体的なバリアントに解決する。
読み取り専用で副作用は無い。

  1. 製品の一括存在確認 (要求した製品数と見つかった製品数を比較)
  2. 製品ごとにバリアントを検証・正規化
     - label が空 / price が不正な行は捨てる
     - label の大文字小文字を無視して重複除去 (最初の1件を残す)
     - 何も残らなければ "Base configuration" の代替バリアントを合成
  3. バリアント選択
     - label 指定あり → 大文字小文字を無視して一致
     - 指定なし → is_default、無ければ価格の昇順で先頭
  4. 在庫チェック (確認のみ。確定は Inventory Ledger の条件付き UPDATE)

単価は常にこの時点のバリアントレコードから取る。クライアントの値は使わない。
"""

import logging

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog
from .errors import InsufficientStock, InvalidVariantSelection, OutOfStock, ProductNotFound
from .models import CartLine, Product, ResolvedLine, Variant

logger = logging.getLogger(__name__)


def normalize_variants(product_id: str, rows: list[dict]) -> list[Variant]:
    """不正な行を捨て、label を大文字小文字無視で重複除去する。"""
    seen: set[str] = set()
    normalized: list[Variant] = []
    for row in rows:
        try:
            variant = Variant.model_validate(row)
        except ValidationError as e:
            logger.warning(
                "Dropping invalid variant %s of product %s: %s",
                row.get("id"),
                product_id,
                e.errors(include_url=False),
            )
            continue
        key = variant.label.lower()
        if key in seen:
            continue
        seen.add(key)
        normalized.append(variant)

    if not normalized:
        return [Variant.fallback(product_id)]
    return normalized


def select_variant(variants: list[Variant], label: str | None) -> Variant:
    if label:
        wanted = label.strip().lower()
        for variant in variants:
            if variant.label.lower() == wanted:
                return variant
        raise InvalidVariantSelection(f"variant {label!r} not offered")

    for variant in variants:
        if variant.is_default:
            return variant
    return min(variants, key=lambda v: (v.price, v.label.lower(), v.id or ""))


def check_stock(variant: Variant, quantity: int) -> None:
    if not variant.in_stock or variant.stock <= 0:
        raise OutOfStock(f"variant {variant.id} ({variant.label}) is out of stock")
    if quantity > variant.stock:
        raise InsufficientStock(
            f"variant {variant.id}: requested={quantity}, available={variant.stock}"
        )


def _resolve_line(line: CartLine, product: Product, variants: list[Variant]) -> ResolvedLine:
    variant = select_variant(variants, line.variant)
    check_stock(variant, line.quantity)
    return ResolvedLine(
        product_id=product.id,
        variant_id=variant.id,
        variant_label=variant.label,
        unit_price=variant.unit_price,
        quantity=line.quantity,
        color=line.color,
        name=product.name,
        image_url=variant.image_url or product.image_url,
        category=product.category,
        condition=variant.condition or product.condition,
        available_stock=variant.stock,
    )


async def resolve(session: AsyncSession, cart_lines: list[CartLine]) -> list[ResolvedLine]:
    unique_ids = list(dict.fromkeys(line.product_id for line in cart_lines))

    found = await catalog.find_products_by_ids(session, unique_ids)
    if len(found) != len(unique_ids):
        missing = set(unique_ids) - {p.id for p in found}
        raise ProductNotFound(f"products not found: {sorted(missing)}")
    product_map = {p.id: p for p in found}

    rows = await catalog.find_variants_by_product_ids(session, unique_ids)
    rows_by_product: dict[str, list[dict]] = {pid: [] for pid in unique_ids}
    for row in rows:
        rows_by_product[row["product_id"]].append(row)
    variants_by_product = {
        pid: normalize_variants(pid, product_rows)
        for pid, product_rows in rows_by_product.items()
    }

    return [
        _resolve_line(line, product_map[line.product_id], variants_by_product[line.product_id])
        for line in cart_lines
    ]
