"""
Inventory Service: 書籍と在庫の増減方向

在庫が動く経路は二つだけ: 絶対値での設定 (PATCH inventory) と、
イベント駆動の増減 (order.placed で減算、order.cancelled で加算)。
数量は決して 0 を下回らない。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StockDirection(str, Enum):
    PLACED = "placed"
    CANCELLED = "cancelled"

    @property
    def sign(self) -> int:
        return -1 if self is StockDirection.PLACED else 1

    @property
    def opposite(self) -> "StockDirection":
        return StockDirection.CANCELLED if self is StockDirection.PLACED else StockDirection.PLACED


@dataclass
class Book:
    id: int
    title: str
    author: str
    price: Decimal
    quantity: int
    updated_at: datetime

    @classmethod
    def from_row(cls, row) -> "Book":
        price = row.price if isinstance(row.price, Decimal) else Decimal(str(row.price))
        return cls(
            id=row.id,
            title=row.title,
            author=row.author,
            price=price.quantize(CENT, rounding=ROUND_HALF_UP),
            quantity=row.quantity,
            updated_at=row.updated_at,
        )
