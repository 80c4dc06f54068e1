# tests/unit/test_state_machine.py

import pytest

from lastmin.domain.state_machine import PaymentStatus, PaymentStatusMachine
from lastmin.domain.exceptions import InvalidPaymentStatusTransitionError


# ---------------------
# VALID TRANSITIONS
# ---------------------

def test_pending_resolves_either_way():
    assert PaymentStatusMachine.can_transition(
        PaymentStatus.PENDING,
        PaymentStatus.PAID,
    )

    assert PaymentStatusMachine.can_transition(
        PaymentStatus.PENDING,
        PaymentStatus.FAILED,
    )


def test_paid_and_failed_flip_for_late_events():
    assert PaymentStatusMachine.can_transition(
        PaymentStatus.PAID,
        PaymentStatus.FAILED,
    )

    assert PaymentStatusMachine.can_transition(
        PaymentStatus.FAILED,
        PaymentStatus.PAID,
    )


# ---------------------
# INVALID TRANSITIONS
# ---------------------

def test_cannot_return_to_pending():
    with pytest.raises(InvalidPaymentStatusTransitionError) as exc_info:
        PaymentStatusMachine.validate_transition(
            PaymentStatus.PAID,
            PaymentStatus.PENDING,
        )

    assert exc_info.value.from_state == "paid"
    assert exc_info.value.to_state == "pending"


def test_same_status_is_not_a_transition():
    assert not PaymentStatusMachine.can_transition(
        PaymentStatus.PAID,
        PaymentStatus.PAID,
    )


def test_allowed_transitions_from_pending():
    assert PaymentStatusMachine.get_allowed_transitions(PaymentStatus.PENDING) == {
        PaymentStatus.PAID,
        PaymentStatus.FAILED,
    }


def test_invalid_type_guard():
    with pytest.raises(TypeError):
        PaymentStatusMachine.validate_transition(
            "paid",  # invalid type
            PaymentStatus.FAILED,
        )
