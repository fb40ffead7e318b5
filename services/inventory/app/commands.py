"""
Inventory Service: 在庫コマンド (Write 側)

``update_inventory`` は絶対値を設定する。``apply_adjustment`` は在庫調整
イベントの 1 行を、その台帳行 (applied_stock_adjustments) と一緒に適用する。
同じ (order, book, direction) で二度呼んでも在庫は一度しか動かない。

台帳行の quantity は実際に動かした数:

  placed    在庫不足で減らせなかった → 0 を記録
  cancelled 対応する placed の記録分だけ戻す (記録が無ければ 0)
  placed    先に cancelled が記録済み → 何も減らさず 0 を記録
"""

import logging
from enum import Enum

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.results import Failure, Result

from . import db, queries
from .aggregate import Book, StockDirection, utcnow
from .errors import ErrorKind

logger = logging.getLogger(__name__)

ledger = db.applied_stock_adjustments


class AdjustmentOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    NOTHING_TO_MOVE = "nothing_to_move"


async def update_inventory(session: AsyncSession, book_id: int, quantity: int) -> Result[Book]:
    if quantity < 0:
        logger.error("Refusing negative quantity %d for book %s", quantity, book_id)
        return Failure(ErrorKind.NEGATIVE_QUANTITY)

    before = await queries.get_book(session, book_id, for_update=True)
    if isinstance(before, Failure):
        return before

    await session.execute(
        update(db.books)
        .where(db.books.c.id == book_id)
        .values(quantity=quantity, updated_at=utcnow())
    )
    await session.commit()
    logger.info("Inventory of book %s (%s): %d -> %d", book_id, before.title, before.quantity, quantity)
    return await queries.get_book(session, book_id)


async def apply_adjustment(
    session: AsyncSession,
    order_id: str,
    book_id: int,
    direction: StockDirection,
    quantity: int,
) -> Result[AdjustmentOutcome]:
    """
    イベント 1 行を呼び出し側のトランザクション内で適用する。

    書き込みの commit は呼び出し側が行う。在庫不足の Failure でも 0 の
    台帳行は書かれているので、commit すること。
    """
    if quantity < 1:
        return Failure(ErrorKind.INVALID_REQUEST_DATA, f"Quantity must be positive, got {quantity}")

    # 書籍行をロックして、同じ書籍への placed / cancelled を直列化する
    book = await queries.get_book(session, book_id, for_update=True)
    if isinstance(book, Failure):
        return book

    if await _recorded(session, order_id, book_id, direction) is not None:
        return AdjustmentOutcome.DUPLICATE

    opposite = await _recorded(session, order_id, book_id, direction.opposite)
    if direction is StockDirection.PLACED:
        amount = 0 if opposite is not None else quantity
    else:
        amount = opposite or 0

    if amount == 0:
        if not await _record(session, order_id, book_id, direction, 0):
            return AdjustmentOutcome.DUPLICATE
        return AdjustmentOutcome.NOTHING_TO_MOVE

    stmt = update(db.books).where(db.books.c.id == book_id)
    if direction is StockDirection.PLACED:
        # 条件付き減算: 並行するコンシューマでも 0 を下回らない
        stmt = stmt.where(db.books.c.quantity >= amount)
    stmt = stmt.values(quantity=db.books.c.quantity + direction.sign * amount, updated_at=utcnow())
    result = await session.execute(stmt)

    if result.rowcount == 0:
        if not await _record(session, order_id, book_id, direction, 0):
            return AdjustmentOutcome.DUPLICATE
        return Failure(
            ErrorKind.INSUFFICIENT_STOCK,
            f"Book {book_id} has {book.quantity}, cannot remove {amount}",
        )

    if not await _record(session, order_id, book_id, direction, amount):
        return AdjustmentOutcome.DUPLICATE
    return AdjustmentOutcome.APPLIED


async def _recorded(
    session: AsyncSession, order_id: str, book_id: int, direction: StockDirection
) -> int | None:
    """台帳に記録された数量。未記録なら None。"""
    return await session.scalar(
        select(ledger.c.quantity).where(
            ledger.c.order_id == order_id,
            ledger.c.book_id == book_id,
            ledger.c.direction == direction.value,
        )
    )


async def _record(
    session: AsyncSession, order_id: str, book_id: int, direction: StockDirection, quantity: int
) -> bool:
    try:
        await session.execute(
            insert(ledger).values(
                order_id=order_id,
                book_id=book_id,
                direction=direction.value,
                quantity=quantity,
                applied_at=utcnow(),
            )
        )
    except IntegrityError:
        # 同じイベントの並行配信が先に記録した
        await session.rollback()
        return False
    return True
