"""
Order Service: エラー種別

業務上の失敗はすべて、これらの種別を付けた ``Failure`` で表す。
HTTP ステータスと既定のメッセージは種別が持つ。
"""

from services.common.results import ErrorKindBase


class ErrorKind(ErrorKindBase):
    INVALID_QUANTITY = (400, "Quantity must be at least 1")
    INVALID_REQUEST_DATA = (400, "Invalid request data")
    EMPTY_CART = (400, "Cannot checkout empty cart")
    ITEM_NOT_FOUND = (404, "Book not found")
    ITEM_NOT_FOUND_IN_CART = (404, "Item not found in cart")
    ORDER_NOT_FOUND = (404, "Order not found")
    INSUFFICIENT_STOCK = (409, "Insufficient stock for order")
    INVALID_ORDER_STATUS = (409, "Invalid order status transition")
    PAYMENT_FAILED = (402, "Payment failed")
    INVENTORY_UNAVAILABLE = (503, "Inventory service unavailable")
