from dataclasses import dataclass
import logging

from lastmin.application.booking_reconciler import BookingReconciler
from lastmin.domain.exceptions import InvalidPaymentStatusTransitionError, ReconciliationError
from lastmin.domain.state_machine import PaymentStatus
from lastmin.infrastructure.payments.stripe_gateway import session_confirmation


logger = logging.getLogger(__name__)

RECONCILE_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}

PAYMENT_STATUS_EVENTS = {
    "payment_intent.succeeded": PaymentStatus.PAID,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
}


@dataclass(frozen=True)
class WebhookOutcome:
    event_type: str
    handled: bool
    booking_id: str | None = None
    created: bool = False
    error_code: str | None = None


class PaymentEventHandler:
    """
    Dispatches a verified gateway event. Domain failures are logged and
    folded into the outcome: nobody waits on a webhook, and the gateway
    must not see an error for an event it delivered correctly.
    """

    def __init__(self, reconciler: BookingReconciler):
        self.reconciler = reconciler

    def handle(self, event: dict) -> WebhookOutcome:
        event_type = event.get("type")
        payload_object = event["data"]["object"]

        if event_type in RECONCILE_EVENTS:
            return self._reconcile_session(event_type, payload_object)

        if event_type in PAYMENT_STATUS_EVENTS:
            return self._update_payment_status(event_type, payload_object)

        logger.info("Unhandled event type %s", event_type)
        return WebhookOutcome(event_type=event_type, handled=False)

    def _reconcile_session(self, event_type: str, session: dict) -> WebhookOutcome:
        confirmation = session_confirmation(session)
        try:
            result = self.reconciler.reconcile(confirmation)
        except ReconciliationError as exc:
            logger.warning(
                "Webhook %s for checkout session %s not reconciled (%s): %s",
                event_type,
                confirmation.reference,
                exc.code,
                exc,
            )
            return WebhookOutcome(event_type=event_type, handled=True, error_code=exc.code)

        return WebhookOutcome(
            event_type=event_type,
            handled=True,
            booking_id=result.booking_id,
            created=result.created,
        )

    def _update_payment_status(self, event_type: str, intent: dict) -> WebhookOutcome:
        payment_intent_id = intent.get("id")
        if not payment_intent_id:
            logger.warning("Webhook %s carries no payment intent id", event_type)
            return WebhookOutcome(
                event_type=event_type,
                handled=True,
                error_code="missing_payment_reference",
            )

        try:
            booking = self.reconciler.apply_payment_status(
                payment_intent_id,
                PAYMENT_STATUS_EVENTS[event_type],
            )
        except InvalidPaymentStatusTransitionError as exc:
            logger.warning("Webhook %s for %s rejected: %s", event_type, payment_intent_id, exc)
            return WebhookOutcome(event_type=event_type, handled=True, error_code=exc.code)

        return WebhookOutcome(
            event_type=event_type,
            handled=True,
            booking_id=booking.id if booking else None,
        )
