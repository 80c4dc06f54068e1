from datetime import datetime, timezone
import logging

from sqlalchemy.orm import Session

from lastmin.domain.exceptions import (
    AlreadyCheckedInError,
    BookingNotCheckableError,
    BookingNotFoundError,
    OwnershipMismatchError,
)
from lastmin.domain.state_machine import BookingStatus, PaymentStatus
from lastmin.infrastructure.db.models import Booking, Provider
from lastmin.infrastructure.repositories.booking_repository import BookingRepository
from lastmin.infrastructure.repositories.provider_repository import ProviderRepository


logger = logging.getLogger(__name__)


class BookingFeed:
    """Read side for customers and providers, plus the check-in scan."""

    def __init__(self, db: Session):
        self.db = db
        self.booking_repository = BookingRepository(db)
        self.provider_repository = ProviderRepository(db)

    def list_for_user(self, user_id: str, since: datetime | None = None) -> list[Booking]:
        if since is not None and since.tzinfo is not None:
            since = since.astimezone(timezone.utc)
        return self.booking_repository.list_for_user(user_id, since=since)

    def get_for_user(self, booking_id: str, user_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        # someone else's booking is reported as missing
        if booking is None or booking.user_id != user_id:
            raise BookingNotFoundError(booking_id)
        return booking

    def get_owned_by(self, booking_id: str, user_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise BookingNotFoundError(booking_id)
        if booking.user_id != user_id:
            raise OwnershipMismatchError("Booking belongs to another user")
        return booking

    def _provider_for(self, user_id: str) -> Provider:
        provider = self.provider_repository.get_by_user_id(user_id)
        if provider is None:
            raise OwnershipMismatchError("Current user is not a provider")
        return provider

    def list_for_provider(self, user_id: str) -> list[Booking]:
        provider = self._provider_for(user_id)
        return self.booking_repository.list_for_provider(provider.id)

    def check_in(self, qr_code: str, user_id: str) -> Booking:
        booking = self.booking_repository.get_by_qr_code(qr_code)
        if booking is None:
            raise BookingNotFoundError(qr_code)

        provider = self._provider_for(user_id)
        if booking.provider_id != provider.id:
            raise OwnershipMismatchError("Booking belongs to another provider")

        if (
            booking.status != BookingStatus.CONFIRMED.value
            or booking.payment_status != PaymentStatus.PAID.value
        ):
            raise BookingNotCheckableError(
                f"Booking {booking.id} is {booking.status}/{booking.payment_status}"
            )

        if booking.checked_in or not self.booking_repository.mark_checked_in(booking.id):
            raise AlreadyCheckedInError(booking.id)

        self.db.commit()
        logger.info("Booking %s checked in by provider %s", booking.id, provider.id)
        return booking
