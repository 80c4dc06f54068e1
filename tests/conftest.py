import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from lastmin.main import app
from lastmin.api.routes.routes import get_db, get_notification_dispatcher, get_payment_gateway
from lastmin.application.booking_reconciler import BookingReconciler
from lastmin.application.notification_dispatcher import NotificationDispatcher
from lastmin.domain.exceptions import MailServiceUnavailableError, UpstreamGatewayError
from lastmin.domain.state_machine import ActivityStatus
from lastmin.infrastructure.db.models import Activity, Profile, Provider
from lastmin.infrastructure.db.session import Base, build_engine
from lastmin.infrastructure.mail.smtp_transport import SmtpMailTransport
from lastmin.infrastructure.payments.stripe_gateway import (
    CHECKOUT_SESSION,
    CheckoutSessionHandle,
    PaymentConfirmation,
    StripeGateway,
    intent_confirmation,
    session_confirmation,
)


CUSTOMER_ID = "user-1"
OTHER_CUSTOMER_ID = "user-2"
PROVIDER_OWNER_ID = "owner-1"


class FakeGateway(StripeGateway):
    """StripeGateway with the network calls replaced by in-memory sessions and intents."""

    def __init__(self, webhook_secret: str = ""):
        super().__init__(api_key="sk_test_fake", webhook_secret=webhook_secret)
        self.sessions: dict[str, dict] = {}
        self.intents: dict[str, dict] = {}
        self.created_sessions: list[dict] = []
        self.created_intents: list[dict] = []

    def add_session(
        self,
        session_id: str,
        payment_intent_id: str | None,
        metadata: dict,
        status: str = "complete",
        payment_status: str = "paid",
    ) -> dict:
        session = {
            "id": session_id,
            "object": "checkout.session",
            "payment_intent": payment_intent_id,
            "status": status,
            "payment_status": payment_status,
            "metadata": metadata,
            "created": int(time.time()),
        }
        self.sessions[session_id] = session
        return session

    def add_intent(self, payment_intent_id: str, metadata: dict, status: str = "succeeded") -> dict:
        intent = {
            "id": payment_intent_id,
            "object": "payment_intent",
            "status": status,
            "metadata": metadata,
        }
        self.intents[payment_intent_id] = intent
        return intent

    def retrieve_checkout_session(self, session_id: str) -> PaymentConfirmation:
        if session_id not in self.sessions:
            raise UpstreamGatewayError(f"Could not retrieve checkout session {session_id}")
        return session_confirmation(self.sessions[session_id])

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentConfirmation:
        if payment_intent_id not in self.intents:
            raise UpstreamGatewayError(f"Could not retrieve payment intent {payment_intent_id}")
        return intent_confirmation(self.intents[payment_intent_id])

    def list_recent_checkout_sessions(self, created_since: datetime) -> list[PaymentConfirmation]:
        return [session_confirmation(session) for session in self.sessions.values()]

    def create_checkout_session(self, **kwargs) -> CheckoutSessionHandle:
        self.created_sessions.append(kwargs)
        session_id = f"cs_test_{len(self.created_sessions)}"
        return CheckoutSessionHandle(session_id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    def create_payment_intent(self, amount_cents: int, currency: str, metadata: dict) -> str:
        self.created_intents.append(
            {"amount_cents": amount_cents, "currency": currency, "metadata": metadata}
        )
        return f"pi_test_{len(self.created_intents)}_secret_abc"


class FakeMailTransport(SmtpMailTransport):
    """Records outgoing mail instead of talking to an SMTP relay."""

    def __init__(self):
        super().__init__(host="smtp.test", sender="noreply@lastmin.test")
        self.sent = []
        self.fail = False

    def send(self, email) -> None:
        if self.fail:
            raise MailServiceUnavailableError("SMTP relay refused the connection")
        self.sent.append(email)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'lastmin-test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def mail_transport():
    return FakeMailTransport()


@pytest.fixture
def dispatcher(session_factory, mail_transport):
    return NotificationDispatcher(
        session_factory=session_factory,
        transport=mail_transport,
        app_url="http://app.test",
    )


@pytest.fixture
def client(session_factory, gateway, dispatcher):
    def override_get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def customer(db):
    profile = Profile(id=CUSTOMER_ID, email="casey@example.com", full_name="Casey Rivera")
    other = Profile(id=OTHER_CUSTOMER_ID, email="jordan@example.com", full_name="Jordan Lee")
    db.add_all([profile, other])
    db.commit()
    return profile


@pytest.fixture
def provider(db):
    owner = Profile(id=PROVIDER_OWNER_ID, email="owner@harborkayak.test", full_name="Sam Harbor")
    db.add(owner)
    db.flush()

    provider = Provider(
        user_id=owner.id,
        name="Harbor Kayak Co.",
        email="bookings@harborkayak.test",
        phone="+1 555 0100",
        city="Seattle",
    )
    db.add(provider)
    db.commit()
    return provider


@pytest.fixture
def make_activity(db, provider):
    def _make(
        available_spots: int = 5,
        total_spots: int = 10,
        discount_price: str = "20.00",
        regular_price: str = "45.00",
        status: ActivityStatus = ActivityStatus.ACTIVE,
        deadline_in: timedelta = timedelta(hours=3),
        title: str = "Sunset Kayak Tour",
    ) -> Activity:
        now = datetime.now(timezone.utc)
        activity = Activity(
            provider_id=provider.id,
            title=title,
            description="Two hours on the bay with a guide.",
            location="Pier 12, Seattle",
            total_spots=total_spots,
            available_spots=available_spots,
            regular_price=Decimal(regular_price),
            discount_price=Decimal(discount_price),
            booking_deadline=now + deadline_in,
            activity_start_time=now + deadline_in + timedelta(hours=1),
            activity_end_time=now + deadline_in + timedelta(hours=3),
            status=status.value,
        )
        db.add(activity)
        db.commit()
        return activity

    return _make


@pytest.fixture
def activity(make_activity):
    return make_activity()


@pytest.fixture
def metadata_for():
    def _metadata(activity: Activity, number_of_spots: int = 1, user_id: str = CUSTOMER_ID) -> dict:
        return {
            "activity_id": activity.id,
            "number_of_spots": str(number_of_spots),
            "user_id": user_id,
            "provider_id": activity.provider_id,
        }

    return _metadata


@pytest.fixture
def confirmation_for(metadata_for):
    def _confirmation(
        activity: Activity,
        payment_intent_id: str = "pi_test_1",
        number_of_spots: int = 1,
        user_id: str = CUSTOMER_ID,
        succeeded: bool = True,
    ) -> PaymentConfirmation:
        return PaymentConfirmation(
            source=CHECKOUT_SESSION,
            reference=f"cs_for_{payment_intent_id}",
            payment_intent_id=payment_intent_id,
            succeeded=succeeded,
            gateway_status="complete/paid" if succeeded else "open/unpaid",
            metadata=metadata_for(activity, number_of_spots, user_id),
        )

    return _confirmation


@pytest.fixture
def make_booking(db, customer, confirmation_for):
    def _make(activity: Activity, payment_intent_id: str = "pi_test_1", number_of_spots: int = 1) -> str:
        result = BookingReconciler(db).reconcile(
            confirmation_for(activity, payment_intent_id, number_of_spots)
        )
        return result.booking_id

    return _make
