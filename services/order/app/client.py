"""
Order Service: Inventory Service クライアント

カート操作とチェックアウト時の再検証で使う、同期 (request/response) の
在庫参照。タイムアウト、接続エラー、読めない応答はすべて
INVENTORY_UNAVAILABLE として返す。在庫数を推測することはしない。
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import httpx

from services.common.results import Failure, Result

from .aggregate import money
from .errors import ErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookSnapshot:
    id: int
    price: Decimal
    quantity: int
    title: str = ""


def parse_book(resp: httpx.Response, book_id: int) -> Result[BookSnapshot]:
    try:
        data = resp.json()
        return BookSnapshot(
            id=int(data["id"]),
            price=money(data["price"]),
            quantity=int(data["quantity"]),
            title=data.get("title", ""),
        )
    except (ValueError, KeyError, TypeError, AttributeError, InvalidOperation) as e:
        logger.error("Unreadable inventory response for book %s: %r", book_id, e)
        return Failure(ErrorKind.INVENTORY_UNAVAILABLE, "Inventory service sent an unreadable response")


class InventoryClient:
    def __init__(self, http: httpx.AsyncClient) -> None:
        self.http = http

    async def get_book(self, book_id: int) -> Result[BookSnapshot]:
        try:
            resp = await self.http.get(f"/books/{book_id}")
        except httpx.TimeoutException:
            logger.error("Inventory lookup timed out for book %s", book_id)
            return Failure(ErrorKind.INVENTORY_UNAVAILABLE, "Inventory service timed out")
        except httpx.RequestError as e:
            logger.error("Inventory service unreachable for book %s: %s", book_id, e)
            return Failure(ErrorKind.INVENTORY_UNAVAILABLE)

        if resp.status_code == 404:
            return Failure(ErrorKind.ITEM_NOT_FOUND, f"Book {book_id} not found")
        if resp.status_code >= 400:
            logger.error("Inventory service returned %d for book %s", resp.status_code, book_id)
            return Failure(ErrorKind.INVENTORY_UNAVAILABLE)
        return parse_book(resp, book_id)

    async def update_book_quantity(self, book_id: int, quantity: int) -> Result[BookSnapshot]:
        """
        書籍の在庫数を絶対値で設定する。

        差分ではない。差分を計算したい呼び出し側は読んでから書くことになり、
        在庫調整コンシューマと競合する。
        """
        try:
            resp = await self.http.patch(
                f"/books/{book_id}/inventory", params={"quantity": quantity}
            )
        except httpx.HTTPError as e:
            logger.error("Inventory update failed for book %s: %s", book_id, e)
            return Failure(ErrorKind.INVENTORY_UNAVAILABLE)

        if resp.status_code == 404:
            return Failure(ErrorKind.ITEM_NOT_FOUND, f"Book {book_id} not found")
        if resp.status_code == 400:
            return Failure(ErrorKind.INVALID_QUANTITY, "Quantity must be zero or positive")
        if resp.status_code >= 400:
            return Failure(ErrorKind.INVENTORY_UNAVAILABLE)
        return parse_book(resp, book_id)
