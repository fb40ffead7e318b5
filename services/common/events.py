"""
在庫調整イベント: Order と Inventory の間の通信契約

イベント名は過去形で、一度発行したら変更しない。2 種類とも payload の形は
同じで、意図はトピックで表す:

    order.placed     → Inventory が各書籍を減算
    order.cancelled  → Inventory が各書籍を加算

    {"orderId": "…", "items": [{"bookId": "1", "quantity": 2}]}
"""

from pydantic import BaseModel, ConfigDict, Field

ORDER_PLACED_TOPIC = "order.placed"
ORDER_CANCELLED_TOPIC = "order.cancelled"


class StockItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    book_id: str = Field(alias="bookId")
    quantity: int


class StockAdjustmentEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId")
    items: list[StockItem]

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)
