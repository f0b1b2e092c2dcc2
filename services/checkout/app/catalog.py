"""
Checkout Service — カタログストア

製品・バリアントの読み取りと、在庫数に対するアトミックな書き込みを提供する。
在庫の減算は「読んで・確認して・書く」ではなく、
WHERE stock >= :qty を条件に持つ単一の UPDATE で行う。
同じ最後の1台を二つのチェックアウトが取り合っても、
ストレージ層で勝者は一つに決まる。

このモジュールはコミットしない。コミットは呼び出し側 (ledger) の責任。
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Product
from .schema import products, variants


async def find_products_by_ids(session: AsyncSession, ids: list[str]) -> list[Product]:
    if not ids:
        return []
    result = await session.execute(select(products).where(products.c.id.in_(ids)))
    return [
        Product(
            id=row.id,
            name=row.name,
            category=row.category or "",
            image_url=row.image_url,
            condition=row.condition or "refurbished",
        )
        for row in result.fetchall()
    ]


async def find_variants_by_product_ids(session: AsyncSession, ids: list[str]) -> list[dict]:
    """
    バリアント行をそのまま (未検証の dict として) 返す。
    検証と正規化は Catalog Resolver が行う。
    """
    if not ids:
        return []
    result = await session.execute(
        select(variants)
        .where(variants.c.product_id.in_(ids))
        .order_by(variants.c.product_id, variants.c.position, variants.c.id)
    )
    return [dict(row._mapping) for row in result.fetchall()]


async def conditional_decrement_stock(
    session: AsyncSession,
    variant_id: str,
    quantity: int,
) -> dict | None:
    """
    stock >= quantity のときだけ stock を quantity 減らす。
    条件を満たさなければ None (他のチェックアウトに負けた)。
    """
    result = await session.execute(
        update(variants)
        .where(variants.c.id == variant_id, variants.c.stock >= quantity)
        .values(stock=variants.c.stock - quantity)
        .returning(variants.c.id, variants.c.stock, variants.c.in_stock)
    )
    row = result.fetchone()
    if row is None:
        return None
    return {"id": row.id, "stock": row.stock, "in_stock": bool(row.in_stock)}


async def increment_stock(
    session: AsyncSession,
    variant_id: str,
    quantity: int,
) -> dict | None:
    result = await session.execute(
        update(variants)
        .where(variants.c.id == variant_id)
        .values(stock=variants.c.stock + quantity)
        .returning(variants.c.id, variants.c.stock, variants.c.in_stock)
    )
    row = result.fetchone()
    if row is None:
        return None
    return {"id": row.id, "stock": row.stock, "in_stock": bool(row.in_stock)}


async def set_in_stock_flag(session: AsyncSession, variant_id: str) -> None:
    """in_stock を現在の stock から DB 側で計算し直す。"""
    await session.execute(
        update(variants).where(variants.c.id == variant_id).values(in_stock=variants.c.stock > 0)
    )


async def get_variant_stock(session: AsyncSession, variant_id: str) -> dict | None:
    """指定バリアントの現在の在庫 (確認・デバッグ用)"""
    result = await session.execute(
        select(variants.c.id, variants.c.stock, variants.c.in_stock).where(
            variants.c.id == variant_id
        )
    )
    row = result.fetchone()
    if row is None:
        return None
    return {"id": row.id, "stock": row.stock, "in_stock": bool(row.in_stock)}
