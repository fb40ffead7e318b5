from datetime import timedelta
from decimal import Decimal

import pytest

from services.common.results import Failure
from services.order.app import queries, repository
from services.order.app.aggregate import Cart, OrderAggregate, OrderStatus, utcnow
from services.order.app.commands import OrderCommands
from services.order.app.errors import ErrorKind
from services.order.app.events import OrderEventPublisher
from services.order.app.payment import PaymentSimulator


async def place(sessions, status=OrderStatus.CONFIRMED, customer="alice", created=None):
    cart = Cart(customer)
    cart.add(1, 2, Decimal("19.99"))
    cart.add(5, 1, Decimal("7.50"))
    order = OrderAggregate.from_cart(cart, now=created)
    order.status = status
    async with sessions() as session:
        await repository.insert_order(session, order)
        await session.commit()
    return order


async def reload(sessions, order_id):
    async with sessions() as session:
        return await repository.load_order(session, order_id)


@pytest.mark.asyncio
async def test_cancelling_paid_order_publishes_restock(order_commands, order_sessions, bus):
    order = await place(order_sessions, OrderStatus.CONFIRMED)

    result = await order_commands.update_status(order.id, OrderStatus.CANCELLED)

    assert result.status is OrderStatus.CANCELLED
    assert (await reload(order_sessions, order.id)).status is OrderStatus.CANCELLED
    assert bus.published == [
        (
            "order.cancelled",
            {
                "orderId": order.id,
                "items": [{"bookId": "1", "quantity": 2}, {"bookId": "5", "quantity": 1}],
            },
        )
    ]


@pytest.mark.asyncio
async def test_cancelling_shipped_order_publishes_restock(order_commands, order_sessions, bus):
    order = await place(order_sessions, OrderStatus.SHIPPED)

    await order_commands.update_status(order.id, OrderStatus.CANCELLED)

    assert [topic for topic, _ in bus.published] == ["order.cancelled"]


@pytest.mark.asyncio
async def test_cancelling_pending_order_publishes_nothing(order_commands, order_sessions, bus):
    order = await place(order_sessions, OrderStatus.PENDING)

    result = await order_commands.update_status(order.id, OrderStatus.CANCELLED)

    assert result.status is OrderStatus.CANCELLED
    assert bus.published == []


@pytest.mark.asyncio
async def test_cancelling_cancelled_order_is_a_refresh(order_commands, order_sessions, bus):
    order = await place(order_sessions, OrderStatus.CANCELLED)

    result = await order_commands.update_status(order.id, OrderStatus.CANCELLED)

    assert result.status is OrderStatus.CANCELLED
    assert result.updated_at > order.updated_at
    assert bus.published == []


@pytest.mark.asyncio
async def test_delivered_order_cannot_be_cancelled(order_commands, order_sessions, bus):
    order = await place(order_sessions, OrderStatus.DELIVERED)

    result = await order_commands.update_status(order.id, OrderStatus.CANCELLED)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.INVALID_ORDER_STATUS
    assert result.http_status == 409
    assert (await reload(order_sessions, order.id)).status is OrderStatus.DELIVERED
    assert bus.published == []


@pytest.mark.asyncio
async def test_forward_progress(order_commands, order_sessions):
    order = await place(order_sessions, OrderStatus.CONFIRMED)

    shipped = await order_commands.update_status(order.id, OrderStatus.SHIPPED)
    delivered = await order_commands.update_status(order.id, OrderStatus.DELIVERED)

    assert shipped.status is OrderStatus.SHIPPED
    assert delivered.status is OrderStatus.DELIVERED
    assert (await reload(order_sessions, order.id)).status is OrderStatus.DELIVERED


@pytest.mark.asyncio
async def test_unknown_order(order_commands):
    result = await order_commands.update_status("missing", OrderStatus.SHIPPED)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.ORDER_NOT_FOUND


@pytest.mark.asyncio
async def test_refund_failure_leaves_order_untouched(order_sessions, bus):
    commands = OrderCommands(
        order_sessions,
        PaymentSimulator(success_rate=1.0, refund_success_rate=0.0),
        OrderEventPublisher(bus),
    )
    order = await place(order_sessions, OrderStatus.CONFIRMED)

    result = await commands.update_status(order.id, OrderStatus.CANCELLED)

    assert isinstance(result, Failure)
    assert result.kind is ErrorKind.PAYMENT_FAILED
    assert result.message == "Refund failed"
    assert (await reload(order_sessions, order.id)).status is OrderStatus.CONFIRMED
    assert bus.published == []


@pytest.mark.asyncio
async def test_void_stale_pending_orders(order_commands, order_sessions):
    stale = await place(order_sessions, OrderStatus.PENDING, created=utcnow() - timedelta(hours=2))
    fresh = await place(order_sessions, OrderStatus.PENDING)
    confirmed = await place(
        order_sessions, OrderStatus.CONFIRMED, created=utcnow() - timedelta(hours=2)
    )

    voided = await order_commands.void_stale_pending_orders(timedelta(minutes=15))

    assert voided == 1
    assert (await reload(order_sessions, stale.id)).status is OrderStatus.CANCELLED
    assert (await reload(order_sessions, fresh.id)).status is OrderStatus.PENDING
    assert (await reload(order_sessions, confirmed.id)).status is OrderStatus.CONFIRMED


@pytest.mark.asyncio
async def test_get_and_list_orders(order_sessions):
    older = await place(order_sessions, OrderStatus.DELIVERED, created=utcnow() - timedelta(days=1))
    newer = await place(order_sessions, OrderStatus.CONFIRMED)
    await place(order_sessions, OrderStatus.CONFIRMED, customer="bob")

    async with order_sessions() as session:
        found = await queries.get_order(session, newer.id)
        missing = await queries.get_order(session, "nope")
        all_orders = await queries.list_orders(session, "alice")
        confirmed = await queries.list_orders(session, "alice", OrderStatus.CONFIRMED)

    assert found.id == newer.id
    assert found.total_amount == Decimal("47.48")
    assert isinstance(missing, Failure)
    assert missing.kind is ErrorKind.ORDER_NOT_FOUND
    assert [o.id for o in all_orders] == [newer.id, older.id]
    assert [o.id for o in confirmed] == [newer.id]
