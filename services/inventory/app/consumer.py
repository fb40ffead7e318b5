"""
Inventory Service: 在庫調整コンシューマ

order.placed (減算) と order.cancelled (加算) を購読する。

配信は at-least-once なので、イベントの各行を台帳行 (order, book,
direction) と一緒に個別のトランザクションで適用する。行ごとの結果:

  applied         → commit
  duplicate       → スキップ、何も書かない
  nothing to move → 動かす数が 0 (placed より先に cancelled が来た、など)。
                    0 の台帳行だけ commit
  permanent       → 未知の書籍、不正な book id、在庫不足: ログを出してスキップ
                    (在庫不足は 0 の台帳行を commit し、後の cancelled が
                    戻しすぎないようにする)
  unexpected      → DB の障害: ログを出し、残りの行は続行。最後に例外を
                    投げて再配信させる (commit 済みの行は台帳で弾かれる)

イベント契約に合わない payload は dead letter へ送る。
"""

import logging

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common.bus import EventBus, PoisonMessage
from services.common.events import (
    ORDER_CANCELLED_TOPIC,
    ORDER_PLACED_TOPIC,
    StockAdjustmentEvent,
)
from services.common.results import Failure

from . import commands
from .aggregate import StockDirection
from .commands import AdjustmentOutcome

logger = logging.getLogger(__name__)


class StockAdjustmentIncomplete(Exception):
    """一部の行が想定外のエラーで失敗した。イベントは再配信が必要。"""


class StockAdjustmentConsumer:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    def register(self, bus: EventBus) -> None:
        bus.subscribe(ORDER_PLACED_TOPIC, self.handle_order_placed)
        bus.subscribe(ORDER_CANCELLED_TOPIC, self.handle_order_cancelled)

    async def handle_order_placed(self, payload: dict) -> None:
        await self._handle(payload, StockDirection.PLACED)

    async def handle_order_cancelled(self, payload: dict) -> None:
        await self._handle(payload, StockDirection.CANCELLED)

    async def _handle(self, payload: dict, direction: StockDirection) -> None:
        try:
            event = StockAdjustmentEvent.model_validate(payload)
        except ValidationError as e:
            logger.error("Malformed %s event: %s", direction.value, e)
            raise PoisonMessage(f"malformed event: {e.error_count()} validation errors") from e

        logger.info(
            "Received order %s event for %s (%d items)",
            direction.value, event.order_id, len(event.items),
        )
        failed_lines = 0
        for item in event.items:
            try:
                book_id = int(item.book_id)
            except ValueError:
                logger.error(
                    "Order %s: skipping line with invalid book id %r", event.order_id, item.book_id
                )
                continue

            try:
                await self._apply_line(event.order_id, book_id, direction, item.quantity)
            except Exception:
                failed_lines += 1
                logger.exception(
                    "Order %s: failed to adjust stock for book %s", event.order_id, book_id
                )

        if failed_lines:
            raise StockAdjustmentIncomplete(
                f"order {event.order_id}: {failed_lines} of {len(event.items)} lines not applied"
            )

    async def _apply_line(
        self, order_id: str, book_id: int, direction: StockDirection, quantity: int
    ) -> None:
        async with self.session_factory() as session:
            outcome = await commands.apply_adjustment(
                session, order_id, book_id, direction, quantity
            )
            await session.commit()

        if isinstance(outcome, Failure):
            logger.warning("Order %s: skipping book %s (%s)", order_id, book_id, outcome.message)
        elif outcome is AdjustmentOutcome.DUPLICATE:
            logger.info("Order %s: book %s already %s, skipping", order_id, book_id, direction.value)
        elif outcome is AdjustmentOutcome.NOTHING_TO_MOVE:
            logger.info(
                "Order %s: book %s %s with nothing to move", order_id, book_id, direction.value
            )
        else:
            logger.info("Order %s: book %s %s", order_id, book_id, direction.value)
