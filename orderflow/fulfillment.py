"""
Fulfillment manager: create, ship, deliver and cancel shipments against unfulfilled quantities.
"""
import logging
from collections import Counter

from orderflow.errors import InvalidRequest, OrderNotEditable
from orderflow.events import FULFILLMENT_CREATED, ORDER_FULFILLED, ORDER_UPDATED
from orderflow.ledger import fulfillment_status, require_fulfillable
from orderflow.lifecycle import Emitter, OrderLifecycle
from orderflow.models import Fulfillment, Order
from orderflow.order_state import FULFILLMENT_TRANSITIONS, require_transition

logger = logging.getLogger(__name__)


class FulfillmentManager(OrderLifecycle):
    async def create_fulfillment(
        self,
        order_id: str,
        items: list[dict],
        carrier: str | None = None,
        tracking_number: str | None = None,
        tracking_url: str | None = None,
    ) -> Fulfillment:
        """Fulfill {order_item_id, quantity} lines. The whole batch is rejected if any line exceeds what remains."""

        async def mutation(order: Order, emit: Emitter) -> Fulfillment:
            if order.status == "cancelled":
                raise OrderNotEditable(order.id, order.status)
            requested: Counter[str] = Counter()
            for line in items:
                quantity = int(line["quantity"])
                if quantity <= 0:
                    raise InvalidRequest("Fulfillment quantities must be positive")
                requested[order.item(line["order_item_id"]).id] += quantity
            if not requested:
                raise InvalidRequest("A fulfillment needs at least one item")
            for order_item_id, quantity in requested.items():
                require_fulfillable(order.item(order_item_id), quantity)

            for order_item_id, quantity in requested.items():
                order.item(order_item_id).fulfilled_quantity += quantity
            fulfillment = Fulfillment(
                items=dict(requested),
                carrier=carrier,
                tracking_number=tracking_number,
                tracking_url=tracking_url,
            )
            order.fulfillments.append(fulfillment)
            order.fulfillment_status = fulfillment_status(order)
            self._transitioned("fulfillment", fulfillment.status)
            logger.info(
                "Created fulfillment_id=%s on order_id=%s (fulfillment_status=%s)",
                fulfillment.id,
                order.id,
                order.fulfillment_status,
            )
            emit(
                FULFILLMENT_CREATED,
                orderId=order.id,
                orderNumber=order.number,
                fulfillmentId=fulfillment.id,
                items=[{"orderItemId": k, "quantity": v} for k, v in fulfillment.items.items()],
                fulfillmentStatus=order.fulfillment_status,
            )
            return fulfillment

        return await self._mutate(order_id, mutation)

    async def ship_fulfillment(
        self,
        order_id: str,
        fulfillment_id: str,
        carrier: str | None = None,
        tracking_number: str | None = None,
        tracking_url: str | None = None,
    ) -> Fulfillment:
        async def mutation(order: Order, emit: Emitter) -> Fulfillment:
            fulfillment = order.find("fulfillments", fulfillment_id)
            require_transition("fulfillment", FULFILLMENT_TRANSITIONS, fulfillment.status, "shipped")
            fulfillment.status = "shipped"
            fulfillment.shipped_at = self.clock()
            fulfillment.carrier = carrier or fulfillment.carrier
            fulfillment.tracking_number = tracking_number or fulfillment.tracking_number
            fulfillment.tracking_url = tracking_url or fulfillment.tracking_url
            self._transitioned("fulfillment", "shipped")
            if order.status == "processing":
                order.status = "shipped"
                self._transitioned("order", "shipped")
                emit(ORDER_UPDATED, **order.summary(), oldStatus="processing", newStatus="shipped")
            logger.info("Shipped fulfillment_id=%s on order_id=%s", fulfillment.id, order.id)
            emit(
                ORDER_FULFILLED,
                id=order.id,
                orderNumber=order.number,
                event="shipped",
                fulfillmentId=fulfillment.id,
                trackingNumber=fulfillment.tracking_number,
                carrier=fulfillment.carrier,
            )
            return fulfillment

        return await self._mutate(order_id, mutation)

    async def deliver_fulfillment(self, order_id: str, fulfillment_id: str) -> Fulfillment:
        async def mutation(order: Order, emit: Emitter) -> Fulfillment:
            fulfillment = order.find("fulfillments", fulfillment_id)
            require_transition("fulfillment", FULFILLMENT_TRANSITIONS, fulfillment.status, "delivered")
            fulfillment.status = "delivered"
            fulfillment.delivered_at = self.clock()
            self._transitioned("fulfillment", "delivered")
            outstanding = [f for f in order.fulfillments if f.status in ("created", "shipped")]
            if (
                not outstanding
                and order.fulfillment_status == "fulfilled"
                and order.status in ("pending", "processing", "shipped")
            ):
                previous = order.status
                order.status = "delivered"
                self._transitioned("order", "delivered")
                emit(ORDER_UPDATED, **order.summary(), oldStatus=previous, newStatus="delivered")
            logger.info("Delivered fulfillment_id=%s on order_id=%s", fulfillment.id, order.id)
            emit(
                ORDER_FULFILLED,
                id=order.id,
                orderNumber=order.number,
                event="delivered",
                fulfillmentId=fulfillment.id,
            )
            return fulfillment

        return await self._mutate(order_id, mutation)

    async def cancel_fulfillment(self, order_id: str, fulfillment_id: str) -> Fulfillment:
        """Only legal before shipping; gives the quantities back to the ledger."""

        async def mutation(order: Order, emit: Emitter) -> Fulfillment:
            fulfillment = order.find("fulfillments", fulfillment_id)
            require_transition("fulfillment", FULFILLMENT_TRANSITIONS, fulfillment.status, "cancelled")
            for order_item_id, quantity in fulfillment.items.items():
                order.item(order_item_id).fulfilled_quantity -= quantity
            fulfillment.status = "cancelled"
            fulfillment.cancelled_at = self.clock()
            order.fulfillment_status = fulfillment_status(order)
            self._transitioned("fulfillment", "cancelled")
            logger.info("Cancelled fulfillment_id=%s on order_id=%s", fulfillment.id, order.id)
            emit(ORDER_UPDATED, **order.summary(), fulfillmentId=fulfillment.id, event="fulfillment_cancelled")
            return fulfillment

        return await self._mutate(order_id, mutation)

    async def list_fulfillments(self, order_id: str) -> list[Fulfillment]:
        order = await self.store.get_order(order_id)
        return list(order.fulfillments)
