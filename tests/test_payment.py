import random
from decimal import Decimal

import pytest

from services.common.results import Failure
from services.order.app.errors import ErrorKind
from services.order.app.payment import PaymentReceipt, PaymentSimulator


@pytest.mark.asyncio
async def test_payment_outcomes_follow_success_rate():
    always = PaymentSimulator(success_rate=1.0)
    never = PaymentSimulator(success_rate=0.0)

    receipt = await always.process_payment("o-1", Decimal("39.98"))
    declined = await never.process_payment("o-1", Decimal("39.98"))

    assert isinstance(receipt, PaymentReceipt)
    assert receipt.amount == Decimal("39.98")
    assert isinstance(declined, Failure)
    assert declined.kind is ErrorKind.PAYMENT_FAILED


@pytest.mark.asyncio
async def test_refund_failure_message():
    result = await PaymentSimulator(refund_success_rate=0.0).refund_payment("o-1", Decimal("1.00"))

    assert isinstance(result, Failure)
    assert result.message == "Refund failed"


@pytest.mark.asyncio
async def test_default_rate_is_roughly_ninety_five_percent():
    payments = PaymentSimulator(rng=random.Random(7))

    outcomes = [await payments.process_payment(str(n), Decimal("1.00")) for n in range(2000)]
    succeeded = sum(isinstance(o, PaymentReceipt) for o in outcomes)

    assert 0.90 < succeeded / 2000 < 0.99
