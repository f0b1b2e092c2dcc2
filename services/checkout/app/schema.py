"""
Checkout Service — テーブル定義

単一のデータストアに products / variants / orders / transactions /
store_settings を置く。在庫の整合性は variants 行への単一の条件付き
UPDATE だけで保つ (分散ロックは使わない)。
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    false,
    func,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

MONEY = Numeric(12, 2)

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("category", String(120), nullable=False, server_default=""),
    Column("image_url", Text),
    Column("condition", String(40), nullable=False, server_default="refurbished"),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
)

variants = Table(
    "variants",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("product_id", String(36), ForeignKey("products.id"), nullable=False, index=True),
    Column("label", String(255), nullable=False),
    Column("price", MONEY, nullable=False),
    Column("original_price", MONEY),
    Column("discounted_price", MONEY),
    Column("on_sale", Boolean, nullable=False, server_default=false()),
    Column("stock", Integer, nullable=False, server_default="0"),
    Column("in_stock", Boolean, nullable=False, server_default=false()),
    Column("is_default", Boolean, nullable=False, server_default=false()),
    Column("color", String(60)),
    Column("image_url", Text),
    Column("condition", String(40)),
    Column("position", Integer, nullable=False, server_default="0"),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36)),
    Column("customer_name", String(255), nullable=False),
    Column("customer_email", String(255), nullable=False),
    Column("customer_phone", String(20), nullable=False),
    Column("shipping_address", JSON, nullable=False),
    Column("items", JSON, nullable=False),
    Column("subtotal", MONEY, nullable=False),
    Column("tax", MONEY, nullable=False),
    Column("shipping", MONEY, nullable=False),
    Column("total", MONEY, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("payment_method", String(10), nullable=False),
    Column("payment_status", String(10), nullable=False),
    Column("status", String(20), nullable=False),
    Column("gateway_order_id", String(255)),
    Column("gateway_payment_id", String(255)),
    Column("gateway_signature", String(255)),
    Column("notes", Text, nullable=False, server_default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), nullable=False, index=True),
    Column("amount", MONEY, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("payment_method", String(10), nullable=False),
    Column("gateway", String(20), nullable=False),
    Column("status", String(10), nullable=False),
    Column("gateway_order_id", String(255)),
    Column("gateway_payment_id", String(255)),
    Column("gateway_signature", String(255)),
    Column("raw_payload", JSON),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

store_settings = Table(
    "store_settings",
    metadata,
    Column("key", String(40), primary_key=True),
    Column("gst_enabled", Boolean, nullable=False),
    Column("gst_rate", Numeric(5, 2), nullable=False),
    Column("shipping_enabled", Boolean, nullable=False),
    Column("shipping_amount", MONEY, nullable=False),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def drop_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
