"""
Order Service: 注文コマンド (Write 側)

状態の変更は必ず ``OrderAggregate.transition_to`` を通す。支払い済み
(CONFIRMED / SHIPPED) の注文をキャンセルするときは、先に返金してから
``order.cancelled`` で在庫を戻すよう Inventory に伝える。
"""

import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.results import Failure, Result

from . import repository
from .aggregate import OrderAggregate, OrderStatus, utcnow
from .errors import ErrorKind
from .events import OrderEventPublisher
from .payment import PaymentSimulator

logger = logging.getLogger(__name__)


class OrderCommands:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payments: PaymentSimulator,
        publisher: OrderEventPublisher,
    ) -> None:
        self.session_factory = session_factory
        self.payments = payments
        self.publisher = publisher

    async def update_status(self, order_id: str, status: OrderStatus) -> Result[OrderAggregate]:
        """
        注文を ``status`` に遷移させる。

        返金に失敗した場合、注文はそのまま残り、呼び出し側には
        PAYMENT_FAILED が返る (再試行してよい)。
        """
        async with self.session_factory() as session:
            order = await repository.load_order(session, order_id, for_update=True)
            if order is None:
                return Failure(ErrorKind.ORDER_NOT_FOUND, f"Order {order_id} not found")

            restock = status is OrderStatus.CANCELLED and order.was_paid
            failure = order.transition_to(status)
            if failure is not None:
                logger.warning("Order %s: %s", order_id, failure.message)
                return failure

            if restock:
                refund = await self.payments.refund_payment(order.id, order.total_amount)
                if isinstance(refund, Failure):
                    logger.error("Order %s not cancelled, refund failed", order_id)
                    return refund

            await repository.save_order_status(session, order)
            await session.commit()

        logger.info("Order %s is now %s", order_id, order.status.value)
        if restock:
            await self.publisher.order_cancelled(order)
        return order

    async def void_stale_pending_orders(self, older_than: timedelta) -> int:
        """完了しなかったチェックアウトが残した PENDING の注文をキャンセルする。"""
        cutoff = utcnow() - older_than
        async with self.session_factory() as session:
            stale = await repository.find_pending_before(session, cutoff)
            for order in stale:
                order.transition_to(OrderStatus.CANCELLED)
                await repository.save_order_status(session, order)
            await session.commit()

        for order in stale:
            logger.warning("Voided stale PENDING order %s of %s", order.id, order.customer_id)
        return len(stale)
