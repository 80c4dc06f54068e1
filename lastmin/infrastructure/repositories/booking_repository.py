# lastmin/infrastructure/repositories/booking_repository.py

from datetime import datetime, timezone
from decimal import Decimal
import secrets

from sqlalchemy.orm import Session
from sqlalchemy import select, update, or_

from lastmin.infrastructure.db.models import Booking
from lastmin.domain.state_machine import BookingStatus, PaymentStatus


def generate_check_in_token() -> str:
    return secrets.token_urlsafe(24)


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_payment_intent_id(
        self,
        payment_intent_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(
            Booking.payment_intent_id == payment_intent_id
        )
        return self.db.execute(stmt).unique().scalar_one_or_none()

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).unique().scalar_one_or_none()

    def get_by_qr_code(self, qr_code: str) -> Booking | None:
        stmt = select(Booking).where(Booking.qr_code == qr_code)
        return self.db.execute(stmt).unique().scalar_one_or_none()

    def create_booking(
        self,
        user_id: str,
        activity_id: str,
        provider_id: str,
        number_of_spots: int,
        price_per_spot: Decimal,
        payment_intent_id: str,
    ) -> Booking:
        """
        Adds and flushes the row so a duplicate payment_intent_id
        surfaces here as IntegrityError.
        """

        booking = Booking(
            user_id=user_id,
            activity_id=activity_id,
            provider_id=provider_id,
            number_of_spots=number_of_spots,
            price_per_spot=price_per_spot,
            total_price=price_per_spot * number_of_spots,
            payment_intent_id=payment_intent_id,
            payment_status=PaymentStatus.PAID.value,
            status=BookingStatus.CONFIRMED.value,
            qr_code=generate_check_in_token(),
            checked_in=False,
            booked_at=datetime.now(timezone.utc),
        )

        self.db.add(booking)
        self.db.flush()
        return booking

    def list_for_user(
        self,
        user_id: str,
        since: datetime | None = None,
    ) -> list[Booking]:
        stmt = select(Booking).where(Booking.user_id == user_id)
        if since is not None:
            stmt = stmt.where(
                or_(Booking.booked_at > since, Booking.checked_in_at > since)
            )
        stmt = stmt.order_by(Booking.booked_at.desc())
        return list(self.db.execute(stmt).unique().scalars().all())

    def list_for_provider(self, provider_id: str) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.provider_id == provider_id)
            .order_by(Booking.booked_at.desc())
        )
        return list(self.db.execute(stmt).unique().scalars().all())

    def update_payment_status(
        self,
        booking: Booking,
        new_status: PaymentStatus,
    ) -> None:

        booking.payment_status = new_status.value

    def mark_checked_in(self, booking_id: str) -> bool:
        """
        Only flips rows that are not yet checked in; returns False
        when another scan got there first.
        """
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.checked_in.is_(False))
            .values(
                checked_in=True,
                checked_in_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1
