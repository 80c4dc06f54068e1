# lastmin/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from lastmin.domain.exceptions import InvalidPaymentStatusTransitionError


class ActivityStatus(str, Enum):
    ACTIVE = "active"
    SOLD_OUT = "sold_out"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PaymentStatusMachine:
    """
    Legal payment status transitions for a booking.
    Gateway events may arrive late or out of order, so paid and failed
    can flip in both directions; nothing returns to pending.
    """

    _ALLOWED_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PENDING: {
            PaymentStatus.PAID,
            PaymentStatus.FAILED,
        },
        PaymentStatus.PAID: {
            PaymentStatus.FAILED,
        },
        PaymentStatus.FAILED: {
            PaymentStatus.PAID,
        },
    }

    @classmethod
    def can_transition(
        cls,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
    ) -> bool:
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(
        cls,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
    ) -> None:
        """
        Raises InvalidPaymentStatusTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidPaymentStatusTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def get_allowed_transitions(
        cls, status: PaymentStatus
    ) -> Set[PaymentStatus]:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @staticmethod
    def _ensure_valid_status(status: PaymentStatus) -> None:
        if not isinstance(status, PaymentStatus):
            raise TypeError(
                f"Expected PaymentStatus, got {type(status)}"
            )
