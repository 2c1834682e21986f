"""
Lifecycle error taxonomy. Services raise these; the API layer maps them to HTTP responses.
A raised error never leaves partial state: the order working copy is discarded.
"""
from decimal import Decimal


class LifecycleError(Exception):
    """Base class for rejections surfaced to the caller of a lifecycle operation."""

    code = "lifecycle_error"

    def details(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self), **self.details()}


class InvalidTransition(LifecycleError):
    """Raised when a state change is not permitted from the current state."""

    code = "invalid_transition"

    def __init__(self, entity: str, current: str | None, attempted: str):
        self.entity = entity
        self.current = current
        self.attempted = attempted
        super().__init__(f"Cannot move {entity} from {current} to {attempted}")

    def details(self) -> dict:
        return {"entity": self.entity, "current": self.current, "attempted": self.attempted}


class InsufficientQuantity(LifecycleError):
    """Raised when a requested quantity or amount exceeds what remains."""

    code = "insufficient_quantity"

    def __init__(
        self,
        requested: int | Decimal,
        remaining: int | Decimal,
        order_item_id: str | None = None,
        what: str = "fulfillable",
    ):
        self.requested = requested
        self.remaining = remaining
        self.order_item_id = order_item_id
        self.what = what
        subject = f"item {order_item_id}" if order_item_id else "order"
        super().__init__(f"Only {remaining} of {subject} remain {what}, {requested} requested")

    def details(self) -> dict:
        return {
            "requested": str(self.requested),
            "remaining": str(self.remaining),
            "orderItemId": self.order_item_id,
            "what": self.what,
        }


class OrderNotEditable(LifecycleError):
    """Raised when the order is already cancelled or completed."""

    code = "order_not_editable"

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} is {status} and can no longer be changed")

    def details(self) -> dict:
        return {"orderId": self.order_id, "status": self.status}


class PersistenceConflict(LifecycleError):
    """Raised when the per-order lock could not be acquired in time."""

    code = "persistence_conflict"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} is being modified concurrently")

    def details(self) -> dict:
        return {"orderId": self.order_id}


class NotFound(LifecycleError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")

    def details(self) -> dict:
        return {"entity": self.entity, "id": self.entity_id}


class InvalidRequest(LifecycleError):
    code = "invalid_request"


class DeliveryFailed(Exception):
    """A webhook delivery attempt failed. Contained inside the dispatcher, never raised to callers."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)
