"""
Order Service: カート操作

カートは最初のアクセスで作られ、空にはなるが削除はされない。
在庫と価格は Inventory Service から取る。HTTP 呼び出しはカート行を
ロックする前に行い、ネットワーク越しにロックを保持しない。

同じ顧客への add_item が並行すると、合算数量のチェックが競合しうる。
カートではこれを許容する。本当の在庫チェックはチェックアウト時の再検証。
"""

import logging
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.results import Failure, Result

from . import repository
from .aggregate import Cart
from .client import InventoryClient
from .errors import ErrorKind

logger = logging.getLogger(__name__)

CartMutation = Callable[[Cart], Failure | None]


def insufficient_stock(book_id: int, requested: int, available: int) -> Failure:
    return Failure(
        ErrorKind.INSUFFICIENT_STOCK,
        f"Insufficient stock for book {book_id}: requested={requested}, available={available}",
    )


class CartService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        inventory: InventoryClient,
    ) -> None:
        self.session_factory = session_factory
        self.inventory = inventory

    async def get_or_create(self, customer_id: str) -> Cart:
        async with self.session_factory() as session:
            cart = await repository.load_cart(session, customer_id)
            if cart is not None:
                return cart
            cart = Cart(customer_id=customer_id)
            await repository.save_cart(session, cart)
            try:
                await session.commit()
            except IntegrityError:
                # 別のリクエストが先に作った
                await session.rollback()
                return await repository.load_cart(session, customer_id)
            logger.info("Created cart for customer %s", customer_id)
            return cart

    async def add_item(self, customer_id: str, book_id: int, quantity: int) -> Result[Cart]:
        logger.info("Adding book %s x%d to cart of %s", book_id, quantity, customer_id)
        if quantity < 1:
            return Failure(ErrorKind.INVALID_QUANTITY)

        book = await self.inventory.get_book(book_id)
        if isinstance(book, Failure):
            return book

        def apply(cart: Cart) -> Failure | None:
            existing = cart.find(book_id)
            combined = quantity + (existing.quantity if existing else 0)
            if combined > book.quantity:
                return insufficient_stock(book_id, combined, book.quantity)
            cart.add(book_id, quantity, book.price)
            return None

        return await self._mutate(customer_id, apply)

    async def update_quantity(
        self, customer_id: str, book_id: int, new_quantity: int
    ) -> Result[Cart]:
        """new_quantity が 0 以下なら行を削除する。"""
        logger.info("Setting book %s to %d in cart of %s", book_id, new_quantity, customer_id)
        current = await self.get_or_create(customer_id)
        if current.find(book_id) is None:
            return self._not_in_cart(book_id)

        if new_quantity > 0:
            book = await self.inventory.get_book(book_id)
            if isinstance(book, Failure):
                return book
            if new_quantity > book.quantity:
                return insufficient_stock(book_id, new_quantity, book.quantity)

        def apply(cart: Cart) -> Failure | None:
            if cart.find(book_id) is None:
                return self._not_in_cart(book_id)
            cart.set_quantity(book_id, new_quantity)
            return None

        return await self._mutate(customer_id, apply)

    async def remove_item(self, customer_id: str, book_id: int) -> Result[Cart]:
        logger.info("Removing book %s from cart of %s", book_id, customer_id)

        def apply(cart: Cart) -> Failure | None:
            if cart.find(book_id) is None:
                return self._not_in_cart(book_id)
            cart.remove(book_id)
            return None

        return await self._mutate(customer_id, apply)

    async def clear(self, customer_id: str) -> Cart:
        logger.info("Clearing cart of %s", customer_id)

        def apply(cart: Cart) -> None:
            cart.clear()

        return await self._mutate(customer_id, apply)

    # ── 内部処理 ───────────────────────────────────

    async def _mutate(self, customer_id: str, mutation: CartMutation) -> Result[Cart]:
        """行ロック付きで読み、変更して保存する。カート操作ごとに 1 トランザクション。"""
        async with self.session_factory() as session:
            cart = await repository.load_cart(session, customer_id, for_update=True)
            if cart is None:
                cart = Cart(customer_id=customer_id)
            failure = mutation(cart)
            if failure is not None:
                logger.warning("Cart of %s unchanged: %s", customer_id, failure.message)
                return failure
            await repository.save_cart(session, cart)
            await session.commit()
            return cart

    @staticmethod
    def _not_in_cart(book_id: int) -> Failure:
        return Failure(ErrorKind.ITEM_NOT_FOUND_IN_CART, f"Book {book_id} is not in the cart")
