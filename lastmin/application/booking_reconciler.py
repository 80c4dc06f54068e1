from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lastmin.domain.exceptions import (
    ActivityNotFoundError,
    BookingRejectedError,
    InsufficientSpotsError,
    InvalidMetadataError,
    MissingPaymentReferenceError,
    OwnershipMismatchError,
    PaymentNotCompletedError,
    ReconciliationError,
)
from lastmin.domain.state_machine import PaymentStatus, PaymentStatusMachine
from lastmin.infrastructure.db.models import Booking
from lastmin.infrastructure.payments.stripe_gateway import PaymentConfirmation, StripeGateway
from lastmin.infrastructure.repositories.activity_repository import ActivityRepository
from lastmin.infrastructure.repositories.booking_repository import BookingRepository
from lastmin.infrastructure.repositories.profile_repository import ProfileRepository


logger = logging.getLogger(__name__)

PAYMENT_INTENT_CONSTRAINT = "uq_booking_payment_intent_id"


@dataclass(frozen=True)
class BookingMetadata:
    activity_id: str
    number_of_spots: int
    user_id: str


@dataclass(frozen=True)
class ReconcileResult:
    booking_id: str
    created: bool


def is_duplicate_payment(exc: IntegrityError) -> bool:
    # Postgres reports the constraint name, SQLite the column.
    message = str(exc.orig)
    return PAYMENT_INTENT_CONSTRAINT in message or "bookings.payment_intent_id" in message


def parse_booking_metadata(metadata: dict[str, str]) -> BookingMetadata:
    """Validates the activity_id / number_of_spots / user_id envelope set at checkout."""
    activity_id = (metadata.get("activity_id") or "").strip()
    raw_spots = (metadata.get("number_of_spots") or "").strip()
    user_id = (metadata.get("user_id") or "").strip()

    missing = [
        name
        for name, value in (
            ("activity_id", activity_id),
            ("number_of_spots", raw_spots),
            ("user_id", user_id),
        )
        if not value
    ]
    if missing:
        raise InvalidMetadataError(f"Missing required metadata: {', '.join(missing)}")

    try:
        number_of_spots = int(raw_spots)
    except ValueError as exc:
        raise InvalidMetadataError(
            f"number_of_spots must be an integer, got {raw_spots!r}"
        ) from exc

    if number_of_spots < 1:
        raise InvalidMetadataError(
            f"number_of_spots must be positive, got {number_of_spots}"
        )

    return BookingMetadata(
        activity_id=activity_id,
        number_of_spots=number_of_spots,
        user_id=user_id,
    )


class BookingReconciler:
    """
    Turns a completed payment into exactly one booking.

    Every trigger (webhook, session sync, intent sync, recent-session
    sweep) ends up in reconcile(). The pre-check on payment_intent_id is
    only a shortcut; the unique constraint on the bookings table is what
    makes creation at-most-once, and losing that race is reported the
    same way as finding an existing booking.
    """

    def __init__(self, db: Session, gateway: StripeGateway | None = None):
        self.db = db
        self.gateway = gateway
        self.booking_repository = BookingRepository(db)
        self.activity_repository = ActivityRepository(db)
        self.profile_repository = ProfileRepository(db)

    def sync_checkout_session(self, session_id: str, caller_id: str) -> ReconcileResult:
        confirmation = self.gateway.retrieve_checkout_session(session_id)
        return self.reconcile(confirmation, caller_id=caller_id)

    def sync_payment_intent(self, payment_intent_id: str, caller_id: str) -> ReconcileResult:
        confirmation = self.gateway.retrieve_payment_intent(payment_intent_id)
        return self.reconcile(confirmation, caller_id=caller_id)

    def sync_recent_sessions(
        self,
        caller_id: str,
        window: timedelta,
    ) -> list[ReconcileResult]:
        """
        Reconciles the caller's checkout sessions from the last `window`.
        A failing session is logged and skipped so one bad payment does
        not hide the others.
        """
        since = datetime.now(timezone.utc) - window
        results: list[ReconcileResult] = []

        for confirmation in self.gateway.list_recent_checkout_sessions(since):
            if confirmation.metadata.get("user_id") != caller_id or not confirmation.succeeded:
                continue
            try:
                results.append(self.reconcile(confirmation, caller_id=caller_id))
            except ReconciliationError as exc:
                logger.warning(
                    "Skipping checkout session %s during recent sync: %s",
                    confirmation.reference,
                    exc,
                )
        return results

    def reconcile(
        self,
        confirmation: PaymentConfirmation,
        caller_id: str | None = None,
    ) -> ReconcileResult:
        """
        caller_id is the authenticated user on client-initiated paths and
        None on the webhook path, which trusts the gateway's signed metadata.
        """
        if not confirmation.succeeded:
            raise PaymentNotCompletedError(confirmation.gateway_status)

        payment_intent_id = confirmation.payment_intent_id
        if not payment_intent_id:
            raise MissingPaymentReferenceError()

        existing = self.booking_repository.get_by_payment_intent_id(payment_intent_id)
        if existing:
            logger.info(
                "Booking %s already exists for payment %s",
                existing.id,
                payment_intent_id,
            )
            return ReconcileResult(booking_id=existing.id, created=False)

        metadata = parse_booking_metadata(confirmation.metadata)

        if caller_id is not None and metadata.user_id != caller_id:
            raise OwnershipMismatchError("Payment does not belong to the current user")

        activity = self.activity_repository.get_by_id(metadata.activity_id)
        if not activity:
            raise ActivityNotFoundError(metadata.activity_id)

        # Advisory only; reserve_spots below is the real capacity guard.
        if activity.available_spots < metadata.number_of_spots:
            raise InsufficientSpotsError(
                activity.id,
                metadata.number_of_spots,
                activity.available_spots,
            )

        activity_id = activity.id
        provider_id = activity.provider_id
        price_per_spot = activity.discount_price

        self._ensure_customer_profile(metadata.user_id)

        try:
            if not self.activity_repository.reserve_spots(activity_id, metadata.number_of_spots):
                raise InsufficientSpotsError(activity_id, metadata.number_of_spots)

            booking = self.booking_repository.create_booking(
                user_id=metadata.user_id,
                activity_id=activity_id,
                provider_id=provider_id,
                number_of_spots=metadata.number_of_spots,
                price_per_spot=price_per_spot,
                payment_intent_id=payment_intent_id,
            )
            booking_id = booking.id
            self.db.commit()
        except InsufficientSpotsError:
            self.db.rollback()
            logger.warning(
                "Activity %s ran out of spots while reconciling payment %s",
                activity_id,
                payment_intent_id,
            )
            raise
        except IntegrityError as exc:
            # Rolling back also returns the spots this attempt reserved.
            self.db.rollback()
            if not is_duplicate_payment(exc):
                logger.warning(
                    "Booking for payment %s rejected by the database: %s",
                    payment_intent_id,
                    exc.orig,
                )
                raise BookingRejectedError(
                    f"Booking for payment {payment_intent_id} was rejected"
                ) from exc
            winner = self.booking_repository.get_by_payment_intent_id(payment_intent_id)
            if winner is None:
                raise
            logger.info(
                "Concurrent reconciliation already created booking %s for payment %s",
                winner.id,
                payment_intent_id,
            )
            return ReconcileResult(booking_id=winner.id, created=False)

        logger.info(
            "Booking %s created: activity=%s spots=%s payment=%s",
            booking_id,
            activity_id,
            metadata.number_of_spots,
            payment_intent_id,
        )
        return ReconcileResult(booking_id=booking_id, created=True)

    def apply_payment_status(
        self,
        payment_intent_id: str,
        new_status: PaymentStatus,
    ) -> Booking | None:
        """
        Updates payment_status on an existing booking. Never creates one;
        returns None when no booking carries this payment yet.
        """
        booking = self.booking_repository.get_by_payment_intent_id(payment_intent_id)
        if booking is None:
            logger.info(
                "No booking for payment %s yet; ignoring %s status",
                payment_intent_id,
                new_status.value,
            )
            return None

        current = PaymentStatus(booking.payment_status)
        if current == new_status:
            return booking

        self._transition(booking, current, new_status)
        self.db.commit()
        logger.info(
            "Booking %s payment status %s -> %s",
            booking.id,
            current.value,
            new_status.value,
        )
        return booking

    def _transition(
        self,
        booking: Booking,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
    ) -> None:
        PaymentStatusMachine.validate_transition(from_status, to_status)
        self.booking_repository.update_payment_status(booking, to_status)

    def _ensure_customer_profile(self, user_id: str) -> None:
        """
        Bookings reference profiles, but a payment can arrive before the
        auth layer has written the payer's row. Commits a placeholder so
        the booking transaction below only ever fails on its own rows.
        """
        if self.profile_repository.get_by_id(user_id) is not None:
            return

        try:
            self.profile_repository.add_placeholder(user_id)
            self.db.commit()
        except IntegrityError as exc:
            # another reconciliation for the same payer created it first
            self.db.rollback()
            if self.profile_repository.get_by_id(user_id) is None:
                raise BookingRejectedError(f"Could not create profile for user {user_id}") from exc
            return

        logger.info("Created placeholder profile for user %s", user_id)
