import pytest

from orderflow.errors import InvalidTransition
from orderflow.order_state import (
    CLAIM_TRANSITIONS,
    FULFILLMENT_TRANSITIONS,
    ORDER_EDIT_TRANSITIONS,
    ORDER_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    RETURN_TRANSITIONS,
    is_terminal,
    is_valid_transition,
    require_transition,
)


@pytest.mark.parametrize(
    "current,new",
    [
        ("pending", "processing"),
        ("pending", "shipped"),
        ("processing", "delivered"),
        ("delivered", "completed"),
        ("shipped", "cancelled"),
    ],
)
def test_order_moves_forward(current, new):
    assert is_valid_transition(ORDER_TRANSITIONS, current, new)


@pytest.mark.parametrize(
    "current,new",
    [
        ("processing", "pending"),
        ("delivered", "shipped"),
        ("completed", "cancelled"),
        ("cancelled", "processing"),
        ("pending", "pending"),
    ],
)
def test_order_never_moves_backward(current, new):
    assert not is_valid_transition(ORDER_TRANSITIONS, current, new)


def test_terminal_states():
    assert is_terminal(ORDER_TRANSITIONS, "cancelled")
    assert is_terminal(ORDER_TRANSITIONS, "completed")
    assert is_terminal(FULFILLMENT_TRANSITIONS, "delivered")
    assert is_terminal(RETURN_TRANSITIONS, "completed")
    assert not is_terminal(CLAIM_TRANSITIONS, "processing")


def test_fulfillment_cannot_be_cancelled_once_shipped():
    assert is_valid_transition(FULFILLMENT_TRANSITIONS, "created", "cancelled")
    assert not is_valid_transition(FULFILLMENT_TRANSITIONS, "shipped", "cancelled")


def test_return_must_be_received_before_completion():
    assert not is_valid_transition(RETURN_TRANSITIONS, "requested", "completed")
    assert is_valid_transition(RETURN_TRANSITIONS, "received", "completed")


def test_order_edit_requires_request_before_confirmation():
    assert not is_valid_transition(ORDER_EDIT_TRANSITIONS, "created", "confirmed")
    assert is_valid_transition(ORDER_EDIT_TRANSITIONS, "requested", "confirmed")


def test_payment_refund_only_after_paid():
    assert not is_valid_transition(PAYMENT_TRANSITIONS, "pending", "refunded")
    assert is_valid_transition(PAYMENT_TRANSITIONS, "paid", "partially_refunded")
    assert is_terminal(PAYMENT_TRANSITIONS, "refunded")


def test_require_transition_reports_states():
    with pytest.raises(InvalidTransition) as exc:
        require_transition("order", ORDER_TRANSITIONS, "delivered", "processing")
    assert exc.value.to_dict() == {
        "error": "invalid_transition",
        "message": "Cannot move order from delivered to processing",
        "entity": "order",
        "current": "delivered",
        "attempted": "processing",
    }
