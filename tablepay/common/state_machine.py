"""Order lifecycle and payment status transitions."""

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "created": {"pending_payment", "cancelled"},
    "pending_payment": {"paid", "in_preparation", "cancelled", "expired"},
    "paid": {"in_preparation", "ready"},
    "in_preparation": {"ready"},
    "ready": {"completed"},
    "completed": set(),
    "cancelled": set(),
    "expired": set(),
}

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"confirmed", "failed"},
    # Refunds are an administrative transition handled outside reconciliation.
    "confirmed": {"refunded"},
    "failed": set(),
    "refunded": set(),
}

TERMINAL_PAYMENT_STATUSES = frozenset({"confirmed", "failed", "refunded"})
AWAITING_PAYMENT_STATUSES = frozenset({"created", "pending_payment"})


def validate_transition(current: str, new: str) -> None:
    """Raise when a lifecycle transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def validate_payment_transition(current: str, new: str) -> None:
    """Raise when a payment status transition is not allowed."""

    if new not in PAYMENT_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid payment transition: {current} -> {new}")


def lifecycle_path(current: str, target: str) -> list[str]:
    """Return the validated lifecycle steps from `current` to `target`.

    Orders still in `created` pass through `pending_payment` first; every step is
    checked against `ALLOWED_TRANSITIONS`.
    """

    steps = []
    if current == "created" and target != "pending_payment" and target != "cancelled":
        validate_transition(current, "pending_payment")
        steps.append("pending_payment")
        current = "pending_payment"
    validate_transition(current, target)
    steps.append(target)
    return steps


def is_terminal_payment(status: str) -> bool:
    return status in TERMINAL_PAYMENT_STATUSES
