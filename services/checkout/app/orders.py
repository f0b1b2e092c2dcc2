"""
Checkout Service — 注文ストア

注文 (orders) と決済試行 (transactions) の書き込み・読み取り。
Order と Transaction は同時に作られ論理的に対になるが、
それぞれ独立して参照できる。Transaction は試行ごとに1行で、
監査のために生のコールバックペイロードを保持する。
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import orders, transactions


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def create_order(
    session: AsyncSession,
    *,
    customer: dict,
    shipping_address: dict,
    items: list[dict],
    subtotal: Decimal,
    tax: Decimal,
    shipping: Decimal,
    total: Decimal,
    currency: str,
    payment_method: str,
    notes: str = "",
    user_id: str | None = None,
) -> dict:
    """
    注文作成

    paymentStatus=pending, status=placed で作成してコミットする。
    """
    now = _now()
    order = {
        "id": str(uuid4()),
        "user_id": user_id,
        "customer_name": customer["name"],
        "customer_email": customer["email"],
        "customer_phone": customer["phone"],
        "shipping_address": shipping_address,
        "items": items,
        "subtotal": subtotal,
        "tax": tax,
        "shipping": shipping,
        "total": total,
        "currency": currency,
        "payment_method": payment_method,
        "payment_status": "pending",
        "status": "placed",
        "gateway_order_id": None,
        "gateway_payment_id": None,
        "gateway_signature": None,
        "notes": notes,
        "created_at": now,
        "updated_at": now,
    }
    await session.execute(orders.insert().values(**order))
    await session.commit()
    return order


async def create_transaction(
    session: AsyncSession,
    *,
    order_id: str,
    amount: Decimal,
    currency: str,
    payment_method: str,
    gateway: str,
) -> dict:
    now = _now()
    transaction = {
        "id": str(uuid4()),
        "order_id": order_id,
        "amount": amount,
        "currency": currency,
        "payment_method": payment_method,
        "gateway": gateway,
        "status": "pending",
        "gateway_order_id": None,
        "gateway_payment_id": None,
        "gateway_signature": None,
        "raw_payload": None,
        "created_at": now,
        "updated_at": now,
    }
    await session.execute(transactions.insert().values(**transaction))
    await session.commit()
    return transaction


async def find_order_by_id(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    return dict(row._mapping) if row else None


async def update_order(session: AsyncSession, order_id: str, patch: dict) -> None:
    await session.execute(
        update(orders).where(orders.c.id == order_id).values(**patch, updated_at=_now())
    )
    await session.commit()


async def mark_order_paid(
    session: AsyncSession,
    order_id: str,
    gateway_payment_id: str,
    signature: str,
) -> bool:
    """
    注文を paid に遷移させる。同じ支払いで既に paid なら何もしない。
    同時に届いたコールバックのうち、実際に行を更新した1件だけが True を返す。
    """
    result = await session.execute(
        update(orders)
        .where(
            orders.c.id == order_id,
            or_(
                orders.c.payment_status != "paid",
                orders.c.gateway_payment_id.is_distinct_from(gateway_payment_id),
            ),
        )
        .values(
            payment_status="paid",
            gateway_payment_id=gateway_payment_id,
            gateway_signature=signature,
            updated_at=_now(),
        )
        .returning(orders.c.id)
    )
    updated = result.scalar_one_or_none() is not None
    await session.commit()
    return updated


async def find_transactions_for_order(session: AsyncSession, order_id: str) -> list[dict]:
    """決済試行を新しい順に返す。"""
    result = await session.execute(
        select(transactions)
        .where(transactions.c.order_id == order_id)
        .order_by(transactions.c.created_at.desc(), transactions.c.id.desc())
    )
    return [dict(row._mapping) for row in result.fetchall()]


async def update_latest_transaction_for_order(
    session: AsyncSession,
    order_id: str,
    patch: dict,
) -> str | None:
    """
    最新の決済試行を更新する (新規作成はしない)。
    更新した Transaction の id を返す。対象が無ければ None。
    """
    latest = (
        select(transactions.c.id)
        .where(transactions.c.order_id == order_id)
        .order_by(transactions.c.created_at.desc(), transactions.c.id.desc())
        .limit(1)
        .scalar_subquery()
    )
    result = await session.execute(
        update(transactions)
        .where(transactions.c.id == latest)
        .values(**patch, updated_at=_now())
        .returning(transactions.c.id)
    )
    transaction_id = result.scalar_one_or_none()
    await session.commit()
    return transaction_id


async def append_transaction(
    session: AsyncSession,
    order: dict,
    fields: dict,
    gateway: str,
) -> str:
    """既存の試行を書き換えずに、新しい決済試行の行を追加する。"""
    now = _now()
    transaction_id = str(uuid4())
    await session.execute(
        transactions.insert().values(
            id=transaction_id,
            order_id=order["id"],
            amount=order["total"],
            currency=order["currency"],
            payment_method=order["payment_method"],
            gateway=gateway,
            created_at=now,
            updated_at=now,
            **fields,
        )
    )
    await session.commit()
    return transaction_id


async def delete_order(session: AsyncSession, order_id: str) -> None:
    await session.execute(delete(orders).where(orders.c.id == order_id))
    await session.commit()


async def delete_transaction(session: AsyncSession, transaction_id: str) -> None:
    await session.execute(delete(transactions).where(transactions.c.id == transaction_id))
    await session.commit()
