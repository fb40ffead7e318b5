"""
Order Service: 在庫調整イベントの発行

注文の状態を commit した後に発行する。発行の失敗はログに残すだけで、
チェックアウトやキャンセルの結果はブローカーに左右されない。
"""

import logging

from services.common.bus import EventBus
from services.common.events import (
    ORDER_CANCELLED_TOPIC,
    ORDER_PLACED_TOPIC,
    StockAdjustmentEvent,
    StockItem,
)

from .aggregate import OrderAggregate

logger = logging.getLogger(__name__)


def stock_adjustment(order: OrderAggregate) -> StockAdjustmentEvent:
    return StockAdjustmentEvent(
        order_id=order.id,
        items=[StockItem(book_id=str(item.book_id), quantity=item.quantity) for item in order.items],
    )


class OrderEventPublisher:
    def __init__(self, bus: EventBus) -> None:
        self.bus = bus

    async def order_placed(self, order: OrderAggregate) -> bool:
        return await self._publish(ORDER_PLACED_TOPIC, order)

    async def order_cancelled(self, order: OrderAggregate) -> bool:
        return await self._publish(ORDER_CANCELLED_TOPIC, order)

    async def _publish(self, topic: str, order: OrderAggregate) -> bool:
        event = stock_adjustment(order)
        try:
            await self.bus.publish(topic, event.to_wire())
        except Exception:
            logger.exception("Failed to publish %s for order %s", topic, order.id)
            return False
        logger.info("Published %s for order %s (%d items)", topic, order.id, len(event.items))
        return True
