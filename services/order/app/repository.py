"""
Order Service: リポジトリ

``AsyncSession`` を受け取るだけの関数群。commit はしない。トランザクション
境界は呼び出し側が持つ (カート/注文の操作ごとに 1 トランザクション)。
"""

from datetime import datetime

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .aggregate import Cart, CartItem, OrderAggregate, OrderItem, OrderStatus, money, utcnow


# ── Carts ────────────────────────────────────────


async def load_cart(
    session: AsyncSession, customer_id: str, for_update: bool = False
) -> Cart | None:
    stmt = select(db.carts).where(db.carts.c.customer_id == customer_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = (await session.execute(stmt)).fetchone()
    if row is None:
        return None

    result = await session.execute(
        select(db.cart_items)
        .where(db.cart_items.c.customer_id == customer_id)
        .order_by(db.cart_items.c.position)
    )
    items = [
        CartItem(book_id=r.book_id, quantity=r.quantity, unit_price=money(r.unit_price))
        for r in result.fetchall()
    ]
    return Cart(customer_id=customer_id, items=items, total_amount=money(row.total_amount))


async def save_cart(session: AsyncSession, cart: Cart) -> None:
    """カートのヘッダを書き、行を置き換える。"""
    now = utcnow()
    result = await session.execute(
        update(db.carts)
        .where(db.carts.c.customer_id == cart.customer_id)
        .values(total_amount=cart.total_amount, updated_at=now)
    )
    if result.rowcount == 0:
        await session.execute(
            insert(db.carts).values(
                customer_id=cart.customer_id, total_amount=cart.total_amount, updated_at=now
            )
        )

    await session.execute(
        delete(db.cart_items).where(db.cart_items.c.customer_id == cart.customer_id)
    )
    if cart.items:
        await session.execute(
            insert(db.cart_items),
            [
                {
                    "customer_id": cart.customer_id,
                    "book_id": item.book_id,
                    "position": position,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                    "subtotal": item.subtotal,
                }
                for position, item in enumerate(cart.items)
            ],
        )


# ── Orders ───────────────────────────────────────


async def insert_order(session: AsyncSession, order: OrderAggregate) -> None:
    await session.execute(
        insert(db.orders).values(
            id=order.id,
            customer_id=order.customer_id,
            status=order.status.value,
            total_amount=order.total_amount,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
    )
    await session.execute(
        insert(db.order_items),
        [
            {
                "order_id": order.id,
                "book_id": item.book_id,
                "position": position,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "subtotal": item.subtotal,
            }
            for position, item in enumerate(order.items)
        ],
    )


async def save_order_status(session: AsyncSession, order: OrderAggregate) -> None:
    """状態の変更だけを保存する。明細と合計は書き換えない。"""
    await session.execute(
        update(db.orders)
        .where(db.orders.c.id == order.id)
        .values(status=order.status.value, updated_at=order.updated_at)
    )


async def load_order(
    session: AsyncSession, order_id: str, for_update: bool = False
) -> OrderAggregate | None:
    stmt = select(db.orders).where(db.orders.c.id == order_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = (await session.execute(stmt)).fetchone()
    if row is None:
        return None
    items = await _load_order_items(session, [order_id])
    return _to_order(row, items.get(order_id, ()))


async def list_orders(
    session: AsyncSession, customer_id: str, status: OrderStatus | None = None
) -> list[OrderAggregate]:
    stmt = select(db.orders).where(db.orders.c.customer_id == customer_id)
    if status is not None:
        stmt = stmt.where(db.orders.c.status == status.value)
    rows = (await session.execute(stmt.order_by(db.orders.c.created_at.desc()))).fetchall()
    items = await _load_order_items(session, [row.id for row in rows])
    return [_to_order(row, items.get(row.id, ())) for row in rows]


async def find_pending_before(session: AsyncSession, cutoff: datetime) -> list[OrderAggregate]:
    """行ロック付き。決済後の確定と同時に走っても上書きしない。"""
    rows = (
        await session.execute(
            select(db.orders)
            .where(
                db.orders.c.status == OrderStatus.PENDING.value,
                db.orders.c.created_at < cutoff,
            )
            .with_for_update()
        )
    ).fetchall()
    items = await _load_order_items(session, [row.id for row in rows])
    return [_to_order(row, items.get(row.id, ())) for row in rows]


async def _load_order_items(
    session: AsyncSession, order_ids: list[str]
) -> dict[str, tuple[OrderItem, ...]]:
    if not order_ids:
        return {}
    result = await session.execute(
        select(db.order_items)
        .where(db.order_items.c.order_id.in_(order_ids))
        .order_by(db.order_items.c.order_id, db.order_items.c.position)
    )
    grouped: dict[str, list[OrderItem]] = {}
    for r in result.fetchall():
        grouped.setdefault(r.order_id, []).append(
            OrderItem(
                book_id=r.book_id,
                quantity=r.quantity,
                unit_price=money(r.unit_price),
                subtotal=money(r.subtotal),
            )
        )
    return {order_id: tuple(items) for order_id, items in grouped.items()}


def _to_order(row, items: tuple[OrderItem, ...]) -> OrderAggregate:
    return OrderAggregate(
        id=row.id,
        customer_id=row.customer_id,
        status=OrderStatus(row.status),
        total_amount=money(row.total_amount),
        items=items,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
