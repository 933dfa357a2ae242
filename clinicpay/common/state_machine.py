"""Lifecycle transitions for appointments and payment orders."""

from clinicpay.common.errors import InvalidStateError

APPOINTMENT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"cancelled", "completed"},
    "cancelled": set(),
    "completed": set(),
}

PAYMENT_ORDER_TRANSITIONS: dict[str, set[str]] = {
    "created": {"paid", "failed", "expired"},
    # A later attempt on the same link can still succeed.
    "failed": {"paid", "expired"},
    "paid": set(),
    "expired": set(),
}

# Statuses that occupy a doctor's slot.
SLOT_HOLDING_STATUSES = ("pending", "confirmed")


def validate_transition(current: str, new: str, transitions: dict[str, set[str]] = APPOINTMENT_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in transitions.get(current, set()):
        raise InvalidStateError(f"Invalid transition: {current} -> {new}")
