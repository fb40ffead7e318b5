"""
Order Service: 決済シミュレータ

決済ゲートウェイの代役。メソッドは async なので、実際のゲートウェイ
クライアントに差し替えてもチェックアウト側は変わらない。
"""

import logging
import random
import uuid
from dataclasses import dataclass
from decimal import Decimal

from services.common.results import Failure, Result

from .errors import ErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentReceipt:
    order_id: str
    amount: Decimal
    transaction_id: str


class PaymentSimulator:
    def __init__(
        self,
        success_rate: float = 0.95,
        refund_success_rate: float = 0.98,
        rng: random.Random | None = None,
    ) -> None:
        self.success_rate = success_rate
        self.refund_success_rate = refund_success_rate
        self.rng = rng or random.Random()

    async def process_payment(self, order_id: str, amount: Decimal) -> Result[PaymentReceipt]:
        if self.rng.random() >= self.success_rate:
            logger.warning("Payment declined for order %s (amount %s)", order_id, amount)
            return Failure(ErrorKind.PAYMENT_FAILED)
        receipt = PaymentReceipt(order_id, amount, str(uuid.uuid4()))
        logger.info("Payment %s captured for order %s", receipt.transaction_id, order_id)
        return receipt

    async def refund_payment(self, order_id: str, amount: Decimal) -> Result[PaymentReceipt]:
        if self.rng.random() >= self.refund_success_rate:
            logger.warning("Refund declined for order %s (amount %s)", order_id, amount)
            return Failure(ErrorKind.PAYMENT_FAILED, "Refund failed")
        receipt = PaymentReceipt(order_id, amount, str(uuid.uuid4()))
        logger.info("Refund %s issued for order %s", receipt.transaction_id, order_id)
        return receipt
