"""
Inventory Service: テーブル定義

``applied_stock_adjustments`` はコンシューマが処理した (order, book, direction)
をすべて記録する台帳。主キーがあるので再配信されたイベントは何もしない。
quantity は実際に在庫を動かした数 (動かさなかった場合は 0)。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

books = Table(
    "books",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", String(255), nullable=False),
    Column("author", String(255), nullable=False),
    Column("price", Numeric(12, 2), nullable=False),
    Column("quantity", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("quantity >= 0", name="ck_books_quantity_non_negative"),
)

applied_stock_adjustments = Table(
    "applied_stock_adjustments",
    metadata,
    Column("order_id", String(36), primary_key=True),
    Column("book_id", Integer, primary_key=True),
    Column("direction", String(16), primary_key=True),
    Column("quantity", Integer, nullable=False),
    Column("applied_at", DateTime(timezone=True), nullable=False),
)


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
