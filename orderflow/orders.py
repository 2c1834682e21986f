"""
Order state machine: creation at checkout, forward status transitions, cancellation,
payment capture/failure and explicit refunds.
"""
import logging
import uuid
from decimal import Decimal
from typing import Any

from orderflow.errors import InvalidRequest
from orderflow.events import (
    ORDER_CANCELLED,
    ORDER_CREATED,
    ORDER_UPDATED,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    Event,
)
from orderflow.ledger import fulfillment_status, item_snapshot, remaining_refundable, remaining_to_return
from orderflow.lifecycle import Emitter, OrderLifecycle
from orderflow.models import NewLine, Order, OrderItem, Refund, RefundLine, money
from orderflow.order_state import ORDER_TRANSITIONS, PAYMENT_TRANSITIONS, require_transition

logger = logging.getLogger(__name__)

ACTIVE_FULFILLMENT_STATES = ("created", "shipped")


def order_number() -> str:
    return f"ORD-{uuid.uuid4().hex[:10].upper()}"


class OrderService(OrderLifecycle):
    async def create_order(
        self,
        store_id: str,
        lines: list[NewLine],
        currency: str = "USD",
        email: str | None = None,
        shipping_address: dict[str, Any] | None = None,
        shipping_total: Decimal | str = "0",
        discount_total: Decimal | str = "0",
        number: str | None = None,
    ) -> Order:
        """Record an order at checkout completion."""
        if not lines:
            raise InvalidRequest("An order needs at least one line item")
        items = [
            OrderItem(title=line.title, sku=line.sku, quantity=line.quantity, unit_price=money(line.unit_price))
            for line in lines
        ]
        order = Order(
            store_id=store_id,
            number=number or order_number(),
            currency=currency,
            email=email,
            shipping_address=shipping_address or {},
            items=items,
            shipping_total=money(shipping_total),
            discount_total=money(discount_total),
        )
        order.subtotal = money(sum((item.line_total for item in items), Decimal("0")))
        order.tax_total = money(self.tax(order.shipping_address, items))
        order.total = money(order.subtotal - order.discount_total + order.shipping_total + order.tax_total)
        await self.store.add_order(order)
        self._transitioned("order", order.status)
        logger.info("Created order_id=%s number=%s total=%s", order.id, order.number, order.total)
        await self.bus.publish(
            Event(
                name=ORDER_CREATED,
                store_id=store_id,
                payload={**order.summary(), "email": email, "createdAt": order.created_at.isoformat()},
            )
        )
        return order

    async def get_order(self, order_id: str) -> Order:
        return await self.store.get_order(order_id)

    async def ledger(self, order_id: str) -> dict[str, Any]:
        """Remaining fulfillable/returnable/claimable quantities and refundable balance."""
        order = await self.store.get_order(order_id)
        return {
            "orderId": order.id,
            "status": order.status,
            "paymentStatus": order.payment_status,
            "fulfillmentStatus": order.fulfillment_status,
            "remainingRefundable": str(remaining_refundable(order)),
            "items": item_snapshot(order),
        }

    async def update_status(self, order_id: str, status: str, note: str | None = None) -> Order:
        if status == "cancelled":
            return await self.cancel(order_id, reason=note)

        async def mutation(order: Order, emit: Emitter) -> Order:
            previous = order.status
            require_transition("order", ORDER_TRANSITIONS, previous, status)
            order.status = status
            self._transitioned("order", status)
            logger.info("Order order_id=%s %s -> %s", order.id, previous, status)
            emit(ORDER_UPDATED, **order.summary(), oldStatus=previous, newStatus=status, note=note)
            return order

        return await self._mutate(order_id, mutation)

    async def cancel(self, order_id: str, reason: str | None = None) -> Order:
        """Cancel the order and any fulfillment not yet delivered. Refunds stay a separate action."""

        async def mutation(order: Order, emit: Emitter) -> Order:
            previous = order.status
            require_transition("order", ORDER_TRANSITIONS, previous, "cancelled")
            now = self.clock()
            cancelled_fulfillments = []
            for fulfillment in order.fulfillments:
                if fulfillment.status not in ACTIVE_FULFILLMENT_STATES:
                    continue
                for order_item_id, quantity in fulfillment.items.items():
                    order.item(order_item_id).fulfilled_quantity -= quantity
                fulfillment.status = "cancelled"
                fulfillment.cancelled_at = now
                cancelled_fulfillments.append(fulfillment.id)
            order.fulfillment_status = fulfillment_status(order)
            order.status = "cancelled"
            order.cancelled_at = now
            order.cancel_reason = reason
            self._transitioned("order", "cancelled")
            logger.info(
                "Cancelled order_id=%s (was %s), cancelled %d fulfillment(s)",
                order.id,
                previous,
                len(cancelled_fulfillments),
            )
            emit(ORDER_UPDATED, **order.summary(), oldStatus=previous, newStatus="cancelled", note=reason)
            emit(
                ORDER_CANCELLED,
                **order.summary(),
                reason=reason,
                cancelledAt=now.isoformat(),
                cancelledFulfillments=cancelled_fulfillments,
            )
            return order

        return await self._mutate(order_id, mutation)

    async def mark_paid(self, order_id: str) -> Order:
        """Capture the order total and advance a pending order to processing."""

        async def mutation(order: Order, emit: Emitter) -> Order:
            self._require_open(order)
            require_transition("payment", PAYMENT_TRANSITIONS, order.payment_status, "paid")
            result = await self.payments.capture(order.id, order.total)
            if not result.success:
                order.payment_status = "failed"
                self._transitioned("payment", "failed")
                logger.warning("Capture failed for order_id=%s: %s", order.id, result.error)
                emit(PAYMENT_FAILED, orderId=order.id, orderNumber=order.number, error=result.error)
                return order
            order.payment_status = "paid"
            order.paid_at = self.clock()
            self._transitioned("payment", "paid")
            emit(
                PAYMENT_COMPLETED,
                orderId=order.id,
                orderNumber=order.number,
                amount=str(order.total),
                transactionId=result.reference,
            )
            if order.status == "pending":
                order.status = "processing"
                self._transitioned("order", "processing")
                emit(ORDER_UPDATED, **order.summary(), oldStatus="pending", newStatus="processing", note="paid")
            logger.info("Payment captured for order_id=%s amount=%s", order.id, order.total)
            return order

        return await self._mutate(order_id, mutation)

    async def mark_payment_failed(self, order_id: str, error: str | None = None) -> Order:
        async def mutation(order: Order, emit: Emitter) -> Order:
            require_transition("payment", PAYMENT_TRANSITIONS, order.payment_status, "failed")
            order.payment_status = "failed"
            self._transitioned("payment", "failed")
            logger.info("Payment failed for order_id=%s: %s", order.id, error)
            emit(PAYMENT_FAILED, orderId=order.id, orderNumber=order.number, error=error)
            return order

        return await self._mutate(order_id, mutation)

    async def create_refund(
        self,
        order_id: str,
        amount: Decimal | str | None = None,
        reason: str | None = None,
        note: str | None = None,
        items: list[dict] | None = None,
    ) -> Refund:
        """Refund an explicit amount, or the value of the given item quantities when amount is omitted."""

        async def mutation(order: Order, emit: Emitter) -> Refund:
            lines = []
            for line in items or []:
                item = order.item(line["order_item_id"])
                quantity = int(line.get("quantity", 0))
                if quantity < 0 or quantity > remaining_to_return(item):
                    raise InvalidRequest(
                        f"Invalid refund quantity {quantity} for item {item.id} ({remaining_to_return(item)} not yet returned)"
                    )
                line_amount = line.get("amount")
                lines.append(
                    RefundLine(
                        order_item_id=item.id,
                        quantity=quantity,
                        amount=money(line_amount if line_amount is not None else item.unit_price * quantity),
                    )
                )
            if amount is None:
                if not lines:
                    raise InvalidRequest("Refund needs an amount or items")
                total = sum((line.amount for line in lines), Decimal("0"))
            else:
                total = money(amount)
            return await self._issue_refund(order, emit, total, reason=reason, note=note, items=lines)

        return await self._mutate(order_id, mutation)
