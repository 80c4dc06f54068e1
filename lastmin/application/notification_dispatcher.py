from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from io import BytesIO
from pathlib import Path
from typing import Any
import logging
import os

from fastapi import BackgroundTasks
from jinja2 import Environment, FileSystemLoader, select_autoescape
import qrcode
from qrcode import constants

from lastmin.domain.exceptions import LastMinError, BookingNotFoundError, RecipientNotFoundError
from lastmin.infrastructure.db.models import Booking
from lastmin.infrastructure.db.session import SessionLocal, get_db_session
from lastmin.infrastructure.mail.smtp_transport import EmailAttachment, OutgoingEmail, SmtpMailTransport
from lastmin.infrastructure.repositories.booking_repository import BookingRepository


logger = logging.getLogger(__name__)

DEFAULT_APP_URL = "http://localhost:6060"
QR_CONTENT_ID = "checkin-qr"
TEMPLATES_PATH = Path(__file__).resolve().parent.parent / "templates" / "emails"


class Audience(str, Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"


@dataclass(frozen=True)
class DeliveryOutcome:
    audience: Audience
    sent: bool
    error_code: str | None = None
    error: str | None = None


def format_price(value: Decimal | None) -> str:
    if value is None:
        return "-"
    return f"${value:,.2f}"


def format_datetime(value: datetime | None) -> str:
    if value is None:
        return "TBD"
    return value.strftime("%a, %b %d, %Y %I:%M %p")


def render_qr_png(payload: str) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(payload)
    qr.make(fit=True)

    image = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class NotificationDispatcher:
    """
    Best-effort booking emails. notify() never raises: every failure is
    logged and reported in the returned DeliveryOutcome, and nothing is
    retried. Each send opens its own session so it can run after the
    request that created the booking has finished.
    """

    def __init__(
        self,
        session_factory=SessionLocal,
        transport: SmtpMailTransport | None = None,
        app_url: str | None = None,
        templates_path: Path | None = None,
    ):
        self.session_factory = session_factory
        self.transport = transport or SmtpMailTransport()
        self.app_url = (app_url or os.getenv("APP_URL", DEFAULT_APP_URL)).rstrip("/")
        self._environment = Environment(
            loader=FileSystemLoader(templates_path or TEMPLATES_PATH),
            autoescape=select_autoescape(["html", "xml"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._environment.filters["price"] = format_price
        self._environment.filters["datetime"] = format_datetime

    def schedule(self, background_tasks: BackgroundTasks, booking_id: str) -> None:
        """Queues both emails to run after the response is sent."""
        background_tasks.add_task(self.notify, booking_id, Audience.CUSTOMER)
        background_tasks.add_task(self.notify, booking_id, Audience.PROVIDER)

    def notify_all(self, booking_id: str) -> list[DeliveryOutcome]:
        return [
            self.notify(booking_id, Audience.CUSTOMER),
            self.notify(booking_id, Audience.PROVIDER),
        ]

    def notify(self, booking_id: str, audience: Audience) -> DeliveryOutcome:
        try:
            self.send(booking_id, audience)
        except LastMinError as exc:
            logger.warning(
                "%s email for booking %s not sent (%s): %s",
                audience.value,
                booking_id,
                exc.code,
                exc,
            )
            return DeliveryOutcome(audience=audience, sent=False, error_code=exc.code, error=str(exc))
        except Exception as exc:
            logger.exception("Unexpected error sending %s email for booking %s", audience.value, booking_id)
            return DeliveryOutcome(
                audience=audience,
                sent=False,
                error_code="notification_error",
                error=str(exc),
            )

        return DeliveryOutcome(audience=audience, sent=True)

    def send(self, booking_id: str, audience: Audience) -> None:
        with get_db_session(self.session_factory) as db:
            booking = BookingRepository(db).get_by_id(booking_id)
            if booking is None:
                raise BookingNotFoundError(booking_id)

            if audience == Audience.CUSTOMER:
                email = self._build_customer_email(booking)
            else:
                email = self._build_provider_email(booking)

        self.transport.send(email)

    def _common_context(self, booking: Booking) -> dict[str, Any]:
        activity = booking.activity
        return {
            "booking": booking,
            "activity": activity,
            "provider": booking.provider,
            "customer": booking.customer,
            "spots_label": "spot" if booking.number_of_spots == 1 else "spots",
            "booking_url": f"{self.app_url}/bookings/{booking.id}",
            "bookings_url": f"{self.app_url}/bookings",
            "provider_dashboard_url": f"{self.app_url}/provider/dashboard",
        }

    def _build_customer_email(self, booking: Booking) -> OutgoingEmail:
        customer = booking.customer
        recipient = customer.email if customer else None
        if not recipient:
            raise RecipientNotFoundError(f"Customer email not found for booking {booking.id}")

        context = self._common_context(booking)
        context["customer_name"] = (customer.full_name if customer else None) or "Guest"
        context["qr_content_id"] = QR_CONTENT_ID

        attachments = []
        if booking.qr_code:
            attachments.append(
                EmailAttachment(
                    filename="check-in.png",
                    content_type="image/png",
                    data=render_qr_png(booking.qr_code),
                    content_id=QR_CONTENT_ID,
                )
            )

        return OutgoingEmail(
            subject=f"Booking Confirmed: {booking.activity.title}",
            recipient=recipient,
            html_body=self._environment.get_template("customer_confirmation.html").render(**context),
            text_body=self._environment.get_template("customer_confirmation.txt").render(**context),
            attachments=tuple(attachments),
        )

    def _build_provider_email(self, booking: Booking) -> OutgoingEmail:
        provider = booking.provider
        recipient = provider.email if provider else None
        if not recipient and provider is not None and provider.owner is not None:
            recipient = provider.owner.email
        if not recipient:
            raise RecipientNotFoundError(f"Provider email not found for booking {booking.id}")

        context = self._common_context(booking)
        customer = booking.customer
        context["customer_name"] = (customer.full_name if customer else None) or "A customer"

        return OutgoingEmail(
            subject=f"New Booking: {booking.activity.title}",
            recipient=recipient,
            html_body=self._environment.get_template("provider_notification.html").render(**context),
            text_body=self._environment.get_template("provider_notification.txt").render(**context),
        )
