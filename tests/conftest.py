"""
共通フィクスチャ

- engine / session_factory: 一時ファイルの SQLite (aiosqlite) にスキーマを作成
- seed_product / seed_variant: カタログの投入ヘルパー
- gateway: FakeGateway (外部呼び出しなし)
- notifier: 送信依頼を記録するだけの NotificationSender
- publisher: InMemoryPublisher
- orchestrator / verifier: 上記を注入済み
"""

from decimal import Decimal
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import select

from app import notifications
from app.database import create_engine, create_session_factory
from app.gateway import FakeGateway
from app.models import CartLine, CustomerInfo, ShippingAddress
from app.notifications import NotificationSender
from app.orchestrator import OrderSagaOrchestrator
from app.publisher import InMemoryPublisher
from app.schema import drop_db, init_db, orders, products, transactions, variants
from app.verifier import PaymentVerifier


class RecordingNotifier(NotificationSender):
    def __init__(self) -> None:
        self.sent = []
        self.fail = False

    async def send_order_confirmation(self, payload) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append(payload)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    await init_db(engine)
    yield engine
    await notifications.drain()
    await drop_db(engine)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def seed_product(session_factory):
    async def _seed(name="ThinkPad T480", category="laptops", **fields) -> str:
        product_id = fields.pop("id", None) or str(uuid4())
        async with session_factory() as session:
            await session.execute(
                products.insert().values(id=product_id, name=name, category=category, **fields)
            )
            await session.commit()
        return product_id

    return _seed


@pytest.fixture
def seed_variant(session_factory):
    async def _seed(product_id: str, label="i5 / 8GB / 256GB", price="25000", stock=5, **fields) -> str:
        variant_id = fields.pop("id", None) or str(uuid4())
        fields.setdefault("in_stock", stock > 0)
        async with session_factory() as session:
            await session.execute(
                variants.insert().values(
                    id=variant_id,
                    product_id=product_id,
                    label=label,
                    price=Decimal(price),
                    stock=stock,
                    **fields,
                )
            )
            await session.commit()
        return variant_id

    return _seed


@pytest.fixture
def variant_row(session_factory):
    async def _get(variant_id: str) -> dict:
        async with session_factory() as session:
            result = await session.execute(select(variants).where(variants.c.id == variant_id))
            return dict(result.fetchone()._mapping)

    return _get


@pytest.fixture
def order_rows(session_factory):
    async def _get() -> list[dict]:
        async with session_factory() as session:
            result = await session.execute(select(orders))
            return [dict(row._mapping) for row in result.fetchall()]

    return _get


@pytest.fixture
def transaction_rows(session_factory):
    async def _get() -> list[dict]:
        async with session_factory() as session:
            result = await session.execute(select(transactions))
            return [dict(row._mapping) for row in result.fetchall()]

    return _get


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def publisher():
    return InMemoryPublisher()


@pytest.fixture
def orchestrator(session_factory, gateway, notifier, publisher):
    return OrderSagaOrchestrator(session_factory, gateway, notifier, publisher)


@pytest.fixture
def verifier(session_factory, gateway, publisher):
    return PaymentVerifier(session_factory, gateway, publisher)


@pytest.fixture
def customer():
    return CustomerInfo(name="Asha Rao", email="Asha.Rao@Gmail.com", phone="9876543210")


@pytest.fixture
def address():
    return ShippingAddress(line1="12 MG Road", city="Bengaluru", state="Karnataka", postal_code="560001")


def cart(*lines) -> list[CartLine]:
    """cart(("product-id", 2, "label"), ...)"""
    return [
        CartLine(product_id=line[0], quantity=line[1], variant=line[2] if len(line) > 2 else None)
        for line in lines
    ]
