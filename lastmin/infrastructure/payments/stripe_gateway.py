# lastmin/infrastructure/payments/stripe_gateway.py

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
import json
import logging
import os

import stripe

from lastmin.domain.exceptions import InvalidWebhookError, UpstreamGatewayError


logger = logging.getLogger(__name__)

CHECKOUT_SESSION = "checkout_session"
PAYMENT_INTENT = "payment_intent"


@dataclass(frozen=True)
class PaymentConfirmation:
    """Gateway-side view of one payment, normalized for reconciliation."""

    source: str
    reference: str | None
    payment_intent_id: str | None
    succeeded: bool
    gateway_status: str | None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSessionHandle:
    session_id: str
    url: str | None


def _field(obj: Any, key: str) -> Any:
    # Works for StripeObject and for plain dicts parsed from a webhook body.
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def _metadata(obj: Any) -> dict[str, str]:
    raw = _field(obj, "metadata")
    if not raw:
        return {}
    return {
        str(key): str(value)
        for key, value in raw.items()
        if value is not None
    }


def session_confirmation(session: Any) -> PaymentConfirmation:
    payment_intent = _field(session, "payment_intent")
    if payment_intent is not None and not isinstance(payment_intent, str):
        # expanded PaymentIntent object
        payment_intent = _field(payment_intent, "id")

    payment_status = _field(session, "payment_status")
    session_status = _field(session, "status")
    return PaymentConfirmation(
        source=CHECKOUT_SESSION,
        reference=_field(session, "id"),
        payment_intent_id=payment_intent or None,
        succeeded=payment_status == "paid" and session_status == "complete",
        gateway_status=f"{session_status}/{payment_status}",
        metadata=_metadata(session),
    )


def intent_confirmation(intent: Any) -> PaymentConfirmation:
    intent_status = _field(intent, "status")
    return PaymentConfirmation(
        source=PAYMENT_INTENT,
        reference=_field(intent, "id"),
        payment_intent_id=_field(intent, "id") or None,
        succeeded=intent_status == "succeeded",
        gateway_status=intent_status,
        metadata=_metadata(intent),
    )


class StripeGateway:
    """Thin adapter over the Stripe SDK; every SDK failure becomes UpstreamGatewayError."""

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else os.getenv("STRIPE_WEBHOOK_SECRET")
        )

    @property
    def verifies_webhooks(self) -> bool:
        return bool(self.webhook_secret)

    def _require_key(self) -> str:
        if not self.api_key:
            raise UpstreamGatewayError(
                "Payment gateway not configured. Set STRIPE_SECRET_KEY."
            )
        return self.api_key

    def parse_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        """
        Returns the event as a plain dict. With a webhook secret configured the
        signature header is mandatory; without one the body is trusted as-is.
        """
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidWebhookError("Webhook body is not valid UTF-8") from exc

        if self.webhook_secret:
            if not signature:
                raise InvalidWebhookError("Missing Stripe-Signature header")
            try:
                stripe.WebhookSignature.verify_header(
                    body,
                    signature,
                    self.webhook_secret,
                    tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
                )
            except stripe.SignatureVerificationError as exc:
                raise InvalidWebhookError(f"Webhook signature verification failed: {exc}") from exc

        try:
            event = json.loads(body)
        except json.JSONDecodeError as exc:
            raise InvalidWebhookError("Invalid event data") from exc

        if not isinstance(event, dict) or not event.get("type"):
            raise InvalidWebhookError("Invalid event data")

        data = event.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
            raise InvalidWebhookError("Event carries no data object")
        return event

    def retrieve_checkout_session(self, session_id: str) -> PaymentConfirmation:
        api_key = self._require_key()
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=api_key)
        except stripe.StripeError as exc:
            raise UpstreamGatewayError(
                f"Could not retrieve checkout session {session_id}: {exc}"
            ) from exc
        return session_confirmation(session)

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentConfirmation:
        api_key = self._require_key()
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=api_key)
        except stripe.StripeError as exc:
            raise UpstreamGatewayError(
                f"Could not retrieve payment intent {payment_intent_id}: {exc}"
            ) from exc
        return intent_confirmation(intent)

    def list_recent_checkout_sessions(self, created_since: datetime) -> list[PaymentConfirmation]:
        api_key = self._require_key()
        try:
            sessions = stripe.checkout.Session.list(
                created={"gte": int(created_since.timestamp())},
                limit=100,
                api_key=api_key,
            )
            return [session_confirmation(item) for item in sessions.auto_paging_iter()]
        except stripe.StripeError as exc:
            raise UpstreamGatewayError(f"Could not list checkout sessions: {exc}") from exc

    def create_checkout_session(
        self,
        title: str,
        description: str,
        amount_cents: int,
        currency: str,
        customer_email: str | None,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
    ) -> CheckoutSessionHandle:
        api_key = self._require_key()
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {
                            "name": title,
                            "description": description,
                        },
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            # intent-sync reads the envelope from the intent itself
            "payment_intent_data": {"metadata": metadata},
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(api_key=api_key, **params)
        except stripe.StripeError as exc:
            raise UpstreamGatewayError(f"Could not create checkout session: {exc}") from exc

        logger.info("Created checkout session %s", _field(session, "id"))
        return CheckoutSessionHandle(session_id=_field(session, "id"), url=_field(session, "url"))

    def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
    ) -> str:
        api_key = self._require_key()
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=api_key,
            )
        except stripe.StripeError as exc:
            raise UpstreamGatewayError(f"Could not create payment intent: {exc}") from exc
        return _field(intent, "client_secret")
