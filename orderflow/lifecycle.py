"""
Unit of work shared by every lifecycle service.

A mutation runs against the locked working copy of one order. Events it emits are only
published after the store has committed, so a rejected or failed mutation publishes nothing.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, TypeVar

from orderflow.errors import InvalidRequest, LifecycleError, OrderNotEditable, PersistenceConflict
from orderflow.events import PAYMENT_REFUNDED, Event, EventBus
from orderflow.ledger import refunded_amount, require_refundable
from orderflow.metrics import lifecycle_rejections_total, order_transitions_total
from orderflow.models import Order, Refund, RefundLine, money, utcnow
from orderflow.order_state import CLOSED_ORDER_STATES, PAYMENT_TRANSITIONS, require_transition
from orderflow.payments import PaymentGateway, TaxCalculator
from orderflow.store import OrderStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Emitter:
    """Collects events raised by a mutation until the order is committed."""

    def __init__(self, order: Order):
        self._order = order
        self.events: list[Event] = []

    def __call__(self, name: str, **payload: Any) -> None:
        self.events.append(Event(name=name, store_id=self._order.store_id, payload=payload))


Mutation = Callable[[Order, Emitter], Awaitable[T]]


class OrderLifecycle:
    def __init__(
        self,
        store: OrderStore,
        bus: EventBus,
        payments: PaymentGateway,
        tax: TaxCalculator,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.bus = bus
        self.payments = payments
        self.tax = tax
        self.clock = clock

    async def _mutate(self, order_id: str, mutation: Mutation[T]) -> T:
        """Validate-then-mutate under the order lock; retried once on PersistenceConflict."""
        for attempt in (1, 2):
            try:
                async with self.store.lock_order(order_id) as order:
                    emit = Emitter(order)
                    result = await mutation(order, emit)
                break
            except PersistenceConflict:
                if attempt == 2:
                    lifecycle_rejections_total.labels(error=PersistenceConflict.code).inc()
                    raise
                logger.warning("Order lock contention on order_id=%s, retrying once", order_id)
            except LifecycleError as e:
                lifecycle_rejections_total.labels(error=e.code).inc()
                logger.info("Rejected operation on order_id=%s: %s", order_id, e)
                raise
        await self.bus.publish_all(emit.events)
        return result

    def _transitioned(self, entity: str, status: str) -> None:
        order_transitions_total.labels(entity=entity, status=status).inc()

    @staticmethod
    def _require_open(order: Order) -> None:
        if order.status in CLOSED_ORDER_STATES:
            raise OrderNotEditable(order.id, order.status)

    async def _issue_refund(
        self,
        order: Order,
        emit: Emitter,
        amount: Decimal,
        reason: str | None = None,
        note: str | None = None,
        items: list[RefundLine] | None = None,
        source: str | None = None,
    ) -> Refund:
        """Validate against the refundable balance, then execute through the payment gateway."""
        amount = money(amount)
        if amount <= 0:
            raise InvalidRequest("Refund amount must be greater than zero")
        require_refundable(order, amount)
        # only captured money can be refunded
        settled = refunded_amount(order) + amount >= order.total
        require_transition(
            "payment", PAYMENT_TRANSITIONS, order.payment_status, "refunded" if settled else "partially_refunded"
        )

        refund = Refund(amount=amount, reason=reason, note=note, items=items or [], source=source)
        result = await self.payments.refund(order.id, amount, reason)
        refund.gateway_reference = result.reference
        order.refunds.append(refund)
        if not result.success:
            refund.status = "failed"
            logger.warning("Refund of %s failed at gateway for order_id=%s: %s", amount, order.id, result.error)
            return refund

        refund.status = "processed"
        order.payment_status = "refunded" if refunded_amount(order) >= order.total else "partially_refunded"
        self._transitioned("refund", refund.status)
        logger.info("Refunded %s on order_id=%s (source=%s)", amount, order.id, source)
        emit(
            PAYMENT_REFUNDED,
            orderId=order.id,
            orderNumber=order.number,
            refundId=refund.id,
            amount=str(amount),
            totalRefunded=str(refunded_amount(order)),
            reason=reason,
            transactionId=result.reference,
        )
        return refund
