"""
Inventory Service: 書籍クエリ (Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.results import Failure, Result

from . import db
from .aggregate import Book
from .errors import ErrorKind


async def get_book(session: AsyncSession, book_id: int, for_update: bool = False) -> Result[Book]:
    stmt = select(db.books).where(db.books.c.id == book_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = (await session.execute(stmt)).fetchone()
    if row is None:
        return Failure(ErrorKind.BOOK_NOT_FOUND, f"Book {book_id} not found")
    return Book.from_row(row)
