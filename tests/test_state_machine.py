"""Unit tests for order lifecycle and payment status guardrails."""

import pytest

from tablepay.common.state_machine import (
    is_terminal_payment,
    lifecycle_path,
    validate_payment_transition,
    validate_transition,
)


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("pending_payment", "in_preparation")


def test_invalid_transition():
    """Illegal transition must raise to protect order correctness."""

    with pytest.raises(ValueError):
        validate_transition("in_preparation", "pending_payment")


def test_terminal_payment_cannot_move_back_to_pending():
    for status in ("confirmed", "failed", "refunded"):
        with pytest.raises(ValueError):
            validate_payment_transition(status, "pending")


def test_failed_payment_cannot_be_confirmed_later():
    with pytest.raises(ValueError):
        validate_payment_transition("failed", "confirmed")


def test_created_order_passes_through_pending_payment():
    assert lifecycle_path("created", "in_preparation") == ["pending_payment", "in_preparation"]
    assert lifecycle_path("created", "cancelled") == ["cancelled"]
    assert lifecycle_path("pending_payment", "paid") == ["paid"]


def test_terminal_payment_statuses():
    assert is_terminal_payment("confirmed")
    assert is_terminal_payment("failed")
    assert not is_terminal_payment("pending")
