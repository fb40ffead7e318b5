"""
Inventory Service: エラー種別
"""

from services.common.results import ErrorKindBase


class ErrorKind(ErrorKindBase):
    BOOK_NOT_FOUND = (404, "Book not found")
    NEGATIVE_QUANTITY = (400, "Quantity cannot be negative")
    INSUFFICIENT_STOCK = (409, "Insufficient stock")
    INVALID_REQUEST_DATA = (400, "Invalid request data")
