"""
Checkout Service — 在庫台帳 (Inventory Ledger)

在庫の引き当て (reserve) と解放 (release) を処理する。
Saga パターンで重要: 引き当て失敗時は、それまでに引き当てた分を
すべて release する補償トランザクションが呼ばれる。

  reserve: stock >= qty を条件にした単一の UPDATE で減算 → 即コミット
           条件不成立 = 同時チェックアウトに負けた → InsufficientStock
  release: stock を qty だけ戻す (補償)。実際に引き当てた分だけ戻すので
           何度呼ばれる経路でも安全。

in_stock フラグの同期は二次的な書き込みで、失敗してもログに残すだけ。
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog
from .errors import InsufficientStock
from .models import Reservation, ResolvedLine

logger = logging.getLogger(__name__)


def aggregate_reservations(lines: list[ResolvedLine]) -> dict[str, int]:
    """
    同じバリアントを指す複数行を合算する (出現順を保つ)。

    個別に引き当てると、それぞれは成功しても合計が在庫を超えうる。
    バリアントを持たない行 (代替バリアント) は台帳の対象外。
    """
    totals: dict[str, int] = {}
    for line in lines:
        if line.variant_id is None:
            continue
        totals[line.variant_id] = totals.get(line.variant_id, 0) + line.quantity
    return totals


async def _sync_in_stock(session: AsyncSession, variant_id: str, row: dict) -> None:
    # row は同期が要るかの判定にだけ使う。書く値はコミット後の stock から DB で計算する
    expected = row["stock"] > 0
    if row["in_stock"] == expected:
        return
    try:
        await catalog.set_in_stock_flag(session, variant_id)
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("Failed to sync in_stock flag for variant %s", variant_id)


async def reserve(session: AsyncSession, variant_id: str, quantity: int) -> Reservation:
    """在庫引き当てコマンド"""
    row = await catalog.conditional_decrement_stock(session, variant_id, quantity)
    if row is None:
        await session.rollback()
        raise InsufficientStock(f"reservation lost: variant={variant_id}, requested={quantity}")
    await session.commit()

    logger.info(
        "Reserved %d of variant %s (remaining=%d)", quantity, variant_id, row["stock"]
    )
    await _sync_in_stock(session, variant_id, row)
    return Reservation(variant_id=variant_id, quantity=quantity, remaining_stock=row["stock"])


async def release(session: AsyncSession, variant_id: str, quantity: int) -> None:
    """在庫解放コマンド（Saga の補償トランザクション）"""
    row = await catalog.increment_stock(session, variant_id, quantity)
    await session.commit()
    if row is None:
        logger.warning("Release of %d for missing variant %s ignored", quantity, variant_id)
        return

    logger.info("Released %d of variant %s (stock=%d)", quantity, variant_id, row["stock"])
    await _sync_in_stock(session, variant_id, row)
