"""Unit tests for appointment and payment-order lifecycle guardrails."""

import pytest

from clinicpay.common.errors import InvalidStateError
from clinicpay.common.state_machine import PAYMENT_ORDER_TRANSITIONS, validate_transition


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("pending", "confirmed")
    validate_transition("confirmed", "completed")


def test_invalid_transition():
    """A cancelled appointment can never be confirmed by a late payment."""

    with pytest.raises(InvalidStateError):
        validate_transition("cancelled", "confirmed")


def test_pending_cannot_skip_to_completed():
    with pytest.raises(InvalidStateError):
        validate_transition("pending", "completed")


def test_failed_order_can_still_be_paid():
    validate_transition("failed", "paid", PAYMENT_ORDER_TRANSITIONS)


@pytest.mark.parametrize("terminal", ["paid", "expired"])
def test_terminal_order_states_have_no_exits(terminal):
    with pytest.raises(InvalidStateError):
        validate_transition(terminal, "failed", PAYMENT_ORDER_TRANSITIONS)
