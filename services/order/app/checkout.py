"""
Order Service: チェックアウトのオーケストレーション

オーケストレータが各ステップを自分で進め、失敗時は補償する:

  ┌─────────────────────────────────────────────────────────┐
  │  1. カートを読む (空なら EMPTY_CART)                      │
  │  2. 全行を Inventory Service で再検証                     │
  │  3. PENDING の注文を保存して commit                       │
  │  4. 決済                                                 │
  │     ├─ ok     → 注文を再読込し CONFIRMED、カートから差引、 │
  │     │           order.placed を発行                       │
  │     └─ failed → CANCELLED (補償)、カートはそのまま         │
  └─────────────────────────────────────────────────────────┘

決済中に注文がキャンセルされることがある (PATCH や stale PENDING の無効化)。
そのため決済後は保存済みの注文を行ロック付きで読み直してから遷移させる。
遷移できなければ返金し、カートにも触れず、イベントも出さない。

プロセスが 3 と 4 の間で落ちた場合は
``OrderCommands.void_stale_pending_orders`` が再起動時にキャンセルする。
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.results import Failure, Result

from . import repository
from .aggregate import OrderAggregate, OrderStatus
from .cart import insufficient_stock
from .client import InventoryClient
from .errors import ErrorKind
from .events import OrderEventPublisher
from .payment import PaymentReceipt, PaymentSimulator

logger = logging.getLogger(__name__)


class CheckoutOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        inventory: InventoryClient,
        payments: PaymentSimulator,
        publisher: OrderEventPublisher,
        payment_timeout: float = 5.0,
    ) -> None:
        self.session_factory = session_factory
        self.inventory = inventory
        self.payments = payments
        self.publisher = publisher
        self.payment_timeout = payment_timeout

    async def checkout(self, customer_id: str) -> Result[OrderAggregate]:
        # ── Step 1: カートを読む ────────────────────
        async with self.session_factory() as session:
            cart = await repository.load_cart(session, customer_id)
        if cart is None or cart.is_empty:
            return Failure(ErrorKind.EMPTY_CART)

        # ── Step 2: 全行を再検証 ────────────────────
        for line in cart.items:
            book = await self.inventory.get_book(line.book_id)
            if isinstance(book, Failure):
                logger.warning("Checkout of %s aborted: %s", customer_id, book.message)
                return book
            if line.quantity > book.quantity:
                logger.warning(
                    "Checkout of %s aborted: book %s has %d, cart wants %d",
                    customer_id, line.book_id, book.quantity, line.quantity,
                )
                return insufficient_stock(line.book_id, line.quantity, book.quantity)

        # ── Step 3: PENDING の注文を保存 ────────────
        order = OrderAggregate.from_cart(cart)
        async with self.session_factory() as session:
            await repository.insert_order(session, order)
            await session.commit()
        logger.info("Order %s created for %s (total %s)", order.id, customer_id, order.total_amount)

        # ── Step 4: 決済 ────────────────────────────
        payment = await self._take_payment(order)
        if isinstance(payment, Failure):
            await self._cancel_unpaid(order, payment)
            return Failure(payment.kind, payment.message, [f"orderId: {order.id}"])

        confirmed = await self._confirm(order)
        if isinstance(confirmed, Failure):
            await self._refund(order)
            return Failure(confirmed.kind, confirmed.message, [f"orderId: {order.id}"])
        logger.info("Order %s confirmed (transaction %s)", order.id, payment.transaction_id)

        await self.publisher.order_placed(confirmed)
        return confirmed

    async def _take_payment(self, order: OrderAggregate) -> Result[PaymentReceipt]:
        try:
            return await asyncio.wait_for(
                self.payments.process_payment(order.id, order.total_amount),
                timeout=self.payment_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Payment for order %s timed out after %.1fs", order.id, self.payment_timeout)
            return Failure(ErrorKind.PAYMENT_FAILED, "Payment timed out")

    async def _confirm(self, order: OrderAggregate) -> Result[OrderAggregate]:
        """
        保存済みの注文を CONFIRMED にし、注文した分だけカートから差し引く。
        両方を同じトランザクションで行う。
        """
        async with self.session_factory() as session:
            stored = await repository.load_order(session, order.id, for_update=True)
            if stored is None:
                return Failure(ErrorKind.ORDER_NOT_FOUND, f"Order {order.id} not found")
            failure = stored.transition_to(OrderStatus.CONFIRMED)
            if failure is not None:
                logger.warning("Order %s not confirmed: %s", order.id, failure.message)
                return failure
            await repository.save_order_status(session, stored)

            cart = await repository.load_cart(session, order.customer_id, for_update=True)
            if cart is not None:
                for item in stored.items:
                    cart.deduct(item.book_id, item.quantity)
                await repository.save_cart(session, cart)
            await session.commit()
        return stored

    async def _cancel_unpaid(self, order: OrderAggregate, payment: Failure) -> None:
        # 補償トランザクション: 注文は CANCELLED として残る
        async with self.session_factory() as session:
            stored = await repository.load_order(session, order.id, for_update=True)
            if stored is not None and stored.transition_to(OrderStatus.CANCELLED) is None:
                await repository.save_order_status(session, stored)
                await session.commit()
        logger.warning("Order %s cancelled: %s", order.id, payment.message)

    async def _refund(self, order: OrderAggregate) -> None:
        refund = await self.payments.refund_payment(order.id, order.total_amount)
        if isinstance(refund, Failure):
            logger.error(
                "Order %s was cancelled during payment and the refund failed: %s",
                order.id, refund.message,
            )
        else:
            logger.warning("Order %s was cancelled during payment, refunded", order.id)
