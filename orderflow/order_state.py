"""
Lifecycle state machines. Valid transitions enforce business rules; nothing moves backward.
"""
from orderflow.errors import InvalidTransition

# Forward-only progression; any later state may be reached directly.
ORDER_FLOW = ["pending", "processing", "shipped", "delivered", "completed"]

# Current state -> allowed next states
ORDER_TRANSITIONS: dict[str, list[str]] = {
    state: ORDER_FLOW[i + 1:] + (["cancelled"] if state != "completed" else [])
    for i, state in enumerate(ORDER_FLOW)
}
ORDER_TRANSITIONS["cancelled"] = []  # terminal

FULFILLMENT_TRANSITIONS: dict[str, list[str]] = {
    "created": ["shipped", "cancelled"],
    "shipped": ["delivered"],
    "delivered": [],
    "cancelled": [],
}

RETURN_TRANSITIONS: dict[str, list[str]] = {
    "requested": ["received", "cancelled"],
    "received": ["completed"],
    "completed": [],
    "cancelled": [],
}

CLAIM_TRANSITIONS: dict[str, list[str]] = {
    "created": ["processing", "completed", "cancelled"],
    "processing": ["completed", "cancelled"],
    "completed": [],
    "cancelled": [],
}

EXCHANGE_TRANSITIONS: dict[str, list[str]] = {
    "pending": ["completed", "cancelled"],
    "completed": [],
    "cancelled": [],
}

ORDER_EDIT_TRANSITIONS: dict[str, list[str]] = {
    "created": ["requested", "cancelled"],
    "requested": ["confirmed", "declined", "cancelled"],
    "confirmed": [],
    "declined": [],
    "cancelled": [],
}

PAYMENT_TRANSITIONS: dict[str, list[str]] = {
    "pending": ["authorized", "paid", "failed"],
    "authorized": ["paid", "failed"],
    "failed": ["authorized", "paid"],  # customer retried
    "paid": ["partially_refunded", "refunded"],
    "partially_refunded": ["partially_refunded", "refunded"],
    "refunded": [],
}

CLOSED_ORDER_STATES = ("cancelled", "completed")


def is_valid_transition(table: dict[str, list[str]], current: str, new: str) -> bool:
    """True if new is allowed after current."""
    return new in table.get(current, [])


def require_transition(entity: str, table: dict[str, list[str]], current: str, new: str) -> None:
    if not is_valid_transition(table, current, new):
        raise InvalidTransition(entity, current, new)


def is_terminal(table: dict[str, list[str]], state: str) -> bool:
    return not table.get(state)
