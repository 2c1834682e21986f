"""
Payment and tax capabilities consumed by the lifecycle services.
"""
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Iterable, Protocol

from orderflow.models import OrderItem, money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentResult:
    success: bool
    reference: str | None = None
    error: str | None = None


class PaymentGateway(Protocol):
    async def authorize(self, order_id: str, amount: Decimal) -> PaymentResult: ...

    async def capture(self, order_id: str, amount: Decimal) -> PaymentResult: ...

    async def refund(self, order_id: str, amount: Decimal, reason: str | None = None) -> PaymentResult: ...


class ManualPaymentGateway:
    """No external gateway: every operation is approved and given a local reference."""

    async def authorize(self, order_id: str, amount: Decimal) -> PaymentResult:
        return PaymentResult(True, f"manual-auth-{uuid.uuid4().hex[:12]}")

    async def capture(self, order_id: str, amount: Decimal) -> PaymentResult:
        return PaymentResult(True, f"manual-capture-{uuid.uuid4().hex[:12]}")

    async def refund(self, order_id: str, amount: Decimal, reason: str | None = None) -> PaymentResult:
        logger.info("Manual refund of %s for order_id=%s", amount, order_id)
        return PaymentResult(True, f"manual-refund-{uuid.uuid4().hex[:12]}")


# (shipping address, lines) -> tax amount
TaxCalculator = Callable[[dict[str, Any], Iterable[OrderItem]], Decimal]


def no_tax(address: dict[str, Any], lines: Iterable[OrderItem]) -> Decimal:
    return Decimal("0.00")


def flat_rate_tax(rate: Decimal | str) -> TaxCalculator:
    rate = Decimal(str(rate))

    def calculate(address: dict[str, Any], lines: Iterable[OrderItem]) -> Decimal:
        return money(sum((line.unit_price * line.quantity for line in lines), Decimal("0")) * rate)

    return calculate
