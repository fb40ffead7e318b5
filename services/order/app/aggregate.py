"""
Order Service: カート集約と注文集約 (Cart / Order Aggregate)

Cart は変更可能な置き場で、変更のたびに合計を再計算する。
Order はカートのスナップショットから作る不変の記録で、作成後に変わるのは
status (と updated_at) だけ。

注文の状態遷移:
    PENDING   → CONFIRMED  (決済成功)
    CONFIRMED → SHIPPED
    SHIPPED   → DELIVERED
    PENDING / CONFIRMED / SHIPPED → CANCELLED
    CANCELLED → CANCELLED  (何もしない。updated_at だけ更新)
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from services.common.results import Failure

from .errors import ErrorKind

CENT = Decimal("0.01")


def money(value) -> Decimal:
    """DB/JSON の金額 (Decimal, float, int, str) をセント単位に揃える。"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset({OrderStatus.CANCELLED}),
}


# ── Cart ─────────────────────────────────────────


@dataclass
class CartItem:
    book_id: int
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return money(self.unit_price * self.quantity)


@dataclass
class Cart:
    customer_id: str
    items: list[CartItem] = field(default_factory=list)
    total_amount: Decimal = Decimal("0.00")

    def find(self, book_id: int) -> CartItem | None:
        return next((item for item in self.items if item.book_id == book_id), None)

    def add(self, book_id: int, quantity: int, unit_price: Decimal) -> CartItem:
        """行を追加する。既にある行は元の単価のまま数量を増やす。"""
        item = self.find(book_id)
        if item is None:
            item = CartItem(book_id=book_id, quantity=quantity, unit_price=money(unit_price))
            self.items.append(item)
        else:
            item.quantity += quantity
        self.recompute_total()
        return item

    def set_quantity(self, book_id: int, quantity: int) -> None:
        item = self.find(book_id)
        if quantity <= 0:
            self.items.remove(item)
        else:
            item.quantity = quantity
        self.recompute_total()

    def deduct(self, book_id: int, quantity: int) -> None:
        """注文済みの数量を差し引く。0 以下になった行は消える。"""
        item = self.find(book_id)
        if item is not None:
            self.set_quantity(book_id, item.quantity - quantity)

    def remove(self, book_id: int) -> None:
        self.items = [item for item in self.items if item.book_id != book_id]
        self.recompute_total()

    def clear(self) -> None:
        self.items = []
        self.recompute_total()

    def recompute_total(self) -> None:
        self.total_amount = money(sum((item.subtotal for item in self.items), Decimal("0")))

    @property
    def is_empty(self) -> bool:
        return not self.items


# ── Order ────────────────────────────────────────


@dataclass(frozen=True)
class OrderItem:
    book_id: int
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


@dataclass
class OrderAggregate:
    id: str
    customer_id: str
    status: OrderStatus
    total_amount: Decimal
    items: tuple[OrderItem, ...]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_cart(cls, cart: Cart, now: datetime | None = None) -> "OrderAggregate":
        """カートの行をスナップショットして PENDING の注文を作る。"""
        now = now or utcnow()
        items = tuple(
            OrderItem(
                book_id=line.book_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
                subtotal=line.subtotal,
            )
            for line in cart.items
        )
        return cls(
            id=str(uuid.uuid4()),
            customer_id=cart.customer_id,
            status=OrderStatus.PENDING,
            total_amount=money(sum((item.subtotal for item in items), Decimal("0"))),
            items=items,
            created_at=now,
            updated_at=now,
        )

    def can_transition_to(self, status: OrderStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, status: OrderStatus, now: datetime | None = None) -> Failure | None:
        """状態を変える唯一のメソッド。遷移を検証し、適用して updated_at を更新する。"""
        if not self.can_transition_to(status):
            return Failure(
                ErrorKind.INVALID_ORDER_STATUS,
                f"Cannot move order from {self.status.value} to {status.value}",
            )
        self.status = status
        self.updated_at = now or utcnow()
        return None

    @property
    def was_paid(self) -> bool:
        return self.status in (OrderStatus.CONFIRMED, OrderStatus.SHIPPED)
