from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import logging
import os

from sqlalchemy.orm import Session

from lastmin.domain.exceptions import (
    ActivityNotBookableError,
    ActivityNotFoundError,
    InsufficientSpotsError,
)
from lastmin.domain.state_machine import ActivityStatus
from lastmin.infrastructure.db.models import Activity
from lastmin.infrastructure.payments.stripe_gateway import CheckoutSessionHandle, StripeGateway
from lastmin.infrastructure.repositories.activity_repository import ActivityRepository
from lastmin.infrastructure.repositories.profile_repository import ProfileRepository


logger = logging.getLogger(__name__)

DEFAULT_APP_URL = "http://localhost:6060"
DEFAULT_CURRENCY = "usd"


def amount_in_cents(price_per_spot: Decimal, number_of_spots: int) -> int:
    total = Decimal(price_per_spot) * number_of_spots * 100
    return int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CheckoutService:
    """
    Opens a payment at the gateway for N spots on an activity. No spots
    are held here: capacity is only taken when the payment is reconciled.
    """

    def __init__(
        self,
        db: Session,
        gateway: StripeGateway,
        app_url: str | None = None,
        currency: str | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.app_url = (app_url or os.getenv("APP_URL", DEFAULT_APP_URL)).rstrip("/")
        self.currency = currency or os.getenv("CHECKOUT_CURRENCY", DEFAULT_CURRENCY)
        self.activity_repository = ActivityRepository(db)
        self.profile_repository = ProfileRepository(db)

    def _bookable_activity(self, activity_id: str, number_of_spots: int) -> Activity:
        activity = self.activity_repository.get_by_id(activity_id)
        if not activity:
            raise ActivityNotFoundError(activity_id)

        if activity.status != ActivityStatus.ACTIVE.value:
            raise ActivityNotBookableError(f"Activity {activity_id} is {activity.status}")

        if _as_utc(activity.booking_deadline) <= datetime.now(timezone.utc):
            raise ActivityNotBookableError(f"Booking deadline for activity {activity_id} has passed")

        if activity.available_spots < number_of_spots:
            raise InsufficientSpotsError(activity_id, number_of_spots, activity.available_spots)

        return activity

    @staticmethod
    def _metadata(activity: Activity, number_of_spots: int, user_id: str) -> dict[str, str]:
        return {
            "activity_id": activity.id,
            "number_of_spots": str(number_of_spots),
            "user_id": user_id,
            "provider_id": activity.provider_id,
        }

    def create_checkout_session(
        self,
        activity_id: str,
        number_of_spots: int,
        user_id: str,
    ) -> CheckoutSessionHandle:
        activity = self._bookable_activity(activity_id, number_of_spots)
        profile = self.profile_repository.get_by_id(user_id)
        provider_name = activity.provider.name if activity.provider else "Last-Min"

        handle = self.gateway.create_checkout_session(
            title=activity.title,
            description=f"{number_of_spots} spot(s) - {provider_name}",
            amount_cents=amount_in_cents(activity.discount_price, number_of_spots),
            currency=self.currency,
            customer_email=profile.email if profile else None,
            success_url=f"{self.app_url}/bookings?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.app_url}/activities/{activity.id}?canceled=true",
            metadata=self._metadata(activity, number_of_spots, user_id),
        )
        logger.info(
            "Checkout session %s opened: activity=%s spots=%s user=%s",
            handle.session_id,
            activity.id,
            number_of_spots,
            user_id,
        )
        return handle

    def create_payment_intent(
        self,
        activity_id: str,
        number_of_spots: int,
        user_id: str,
    ) -> str:
        activity = self._bookable_activity(activity_id, number_of_spots)
        return self.gateway.create_payment_intent(
            amount_cents=amount_in_cents(activity.discount_price, number_of_spots),
            currency=self.currency,
            metadata=self._metadata(activity, number_of_spots, user_id),
        )
