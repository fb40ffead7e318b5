"""
Order Service: 注文クエリ (Read 側)
"""

from sqlalchemy.ext.asyncio import AsyncSession

from services.common.results import Failure, Result

from . import repository
from .aggregate import OrderAggregate, OrderStatus
from .errors import ErrorKind


async def get_order(session: AsyncSession, order_id: str) -> Result[OrderAggregate]:
    order = await repository.load_order(session, order_id)
    if order is None:
        return Failure(ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found")
    return order


async def list_orders(
    session: AsyncSession, customer_id: str, status: OrderStatus | None = None
) -> list[OrderAggregate]:
    """顧客の注文を新しい順に返す。status で絞り込める。"""
    return await repository.list_orders(session, customer_id, status)
