from datetime import datetime, timedelta
from functools import lru_cache
from typing import NoReturn
import logging
import os

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from lastmin.infrastructure.db.session import SessionLocal
from lastmin.application.booking_feed import BookingFeed
from lastmin.application.booking_reconciler import BookingReconciler, ReconcileResult
from lastmin.application.checkout_service import CheckoutService
from lastmin.application.notification_dispatcher import NotificationDispatcher
from lastmin.application.payment_events import PaymentEventHandler
from lastmin.api.schemas.schemas import (
    BookingResponse,
    CheckInRequest,
    CheckoutRequest,
    CheckoutResponse,
    DeliveryOutcomeResponse,
    IntentSyncRequest,
    PaymentIntentResponse,
    ReconcileResponse,
    SessionSyncRequest,
    SyncRecentResponse,
    TestEmailRequest,
    TestEmailResponse,
)
from lastmin.domain.exceptions import (
    ActivityNotBookableError,
    ActivityNotFoundError,
    AlreadyCheckedInError,
    BookingNotCheckableError,
    BookingNotFoundError,
    BookingRejectedError,
    InsufficientSpotsError,
    InvalidMetadataError,
    InvalidWebhookError,
    LastMinError,
    MissingPaymentReferenceError,
    OwnershipMismatchError,
    PaymentNotCompletedError,
    UpstreamGatewayError,
)
from lastmin.infrastructure.payments.stripe_gateway import StripeGateway


router = APIRouter()
logger = logging.getLogger(__name__)

BOOKING_FAILED_MESSAGE = "Booking could not be completed"

_ERROR_STATUS: dict[type[LastMinError], int] = {
    PaymentNotCompletedError: status.HTTP_400_BAD_REQUEST,
    MissingPaymentReferenceError: status.HTTP_400_BAD_REQUEST,
    InvalidMetadataError: status.HTTP_400_BAD_REQUEST,
    ActivityNotBookableError: status.HTTP_400_BAD_REQUEST,
    OwnershipMismatchError: status.HTTP_403_FORBIDDEN,
    ActivityNotFoundError: status.HTTP_404_NOT_FOUND,
    BookingNotFoundError: status.HTTP_404_NOT_FOUND,
    InsufficientSpotsError: status.HTTP_409_CONFLICT,
    AlreadyCheckedInError: status.HTTP_409_CONFLICT,
    BookingNotCheckableError: status.HTTP_409_CONFLICT,
    BookingRejectedError: status.HTTP_409_CONFLICT,
    UpstreamGatewayError: status.HTTP_502_BAD_GATEWAY,
}

# Shown to the user instead of the internal reason.
_USER_MESSAGES: dict[type[LastMinError], str] = {
    ActivityNotFoundError: BOOKING_FAILED_MESSAGE,
    InsufficientSpotsError: BOOKING_FAILED_MESSAGE,
    BookingRejectedError: BOOKING_FAILED_MESSAGE,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "unauthorized", "message": "Unauthorized"},
        )
    return x_user_id


def get_payment_gateway() -> StripeGateway:
    return StripeGateway()


@lru_cache
def get_notification_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()


async def get_raw_body(request: Request) -> bytes:
    return await request.body()


def _raise_http(exc: LastMinError) -> NoReturn:
    status_code = status.HTTP_400_BAD_REQUEST
    message = str(exc)
    for klass in type(exc).__mro__:
        if klass in _ERROR_STATUS:
            status_code = _ERROR_STATUS[klass]
            message = _USER_MESSAGES.get(klass, message)
            break

    raise HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "message": message},
    ) from exc


def _reconcile_response(
    result: ReconcileResult,
    background_tasks: BackgroundTasks,
    dispatcher: NotificationDispatcher,
) -> ReconcileResponse:
    if result.created:
        dispatcher.schedule(background_tasks, result.booking_id)
        message = "Booking created"
    else:
        message = "Booking already confirmed"
    return ReconcileResponse(booking_id=result.booking_id, created=result.created, message=message)


@router.get("/health")
def health():
    return {"status": "ok"}


@router.post("/webhooks/stripe")
def stripe_webhook(
    background_tasks: BackgroundTasks,
    payload: bytes = Depends(get_raw_body),
    stripe_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    if not gateway.verifies_webhooks and os.getenv("APP_ENV", "development") != "development":
        logger.warning("STRIPE_WEBHOOK_SECRET not set; accepting webhook without signature verification")

    try:
        event = gateway.parse_webhook_event(payload, stripe_signature)
    except InvalidWebhookError as exc:
        logger.warning("Rejected webhook: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": exc.code, "message": str(exc)},
        ) from exc

    handler = PaymentEventHandler(BookingReconciler(db, gateway))
    outcome = handler.handle(event)

    if outcome.created and outcome.booking_id:
        dispatcher.schedule(background_tasks, outcome.booking_id)

    return {"received": True}


@router.post("/bookings/sync-session", response_model=ReconcileResponse)
def sync_checkout_session(
    request: SessionSyncRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    reconciler = BookingReconciler(db, gateway)
    try:
        result = reconciler.sync_checkout_session(request.session_id, caller_id=user_id)
    except LastMinError as exc:
        _raise_http(exc)

    return _reconcile_response(result, background_tasks, dispatcher)


@router.post("/bookings/sync", response_model=ReconcileResponse)
def sync_payment_intent(
    request: IntentSyncRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    reconciler = BookingReconciler(db, gateway)
    try:
        result = reconciler.sync_payment_intent(request.payment_intent_id, caller_id=user_id)
    except LastMinError as exc:
        _raise_http(exc)

    return _reconcile_response(result, background_tasks, dispatcher)


@router.post("/bookings/sync-recent", response_model=SyncRecentResponse)
def sync_recent_sessions(
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    window = timedelta(hours=float(os.getenv("SYNC_RECENT_WINDOW_HOURS", "24")))
    reconciler = BookingReconciler(db, gateway)
    try:
        results = reconciler.sync_recent_sessions(user_id, window)
    except LastMinError as exc:
        _raise_http(exc)

    created = [result for result in results if result.created]
    for result in created:
        dispatcher.schedule(background_tasks, result.booking_id)

    return SyncRecentResponse(synced=True, count=len(created))


@router.post("/bookings/test-email", response_model=TestEmailResponse)
def send_test_email(
    request: TestEmailRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    feed = BookingFeed(db)
    try:
        booking = feed.get_owned_by(request.booking_id, user_id)
    except LastMinError as exc:
        _raise_http(exc)

    outcomes = dispatcher.notify_all(booking.id)
    return TestEmailResponse(
        booking_id=booking.id,
        results=[
            DeliveryOutcomeResponse(
                audience=outcome.audience.value,
                sent=outcome.sent,
                error_code=outcome.error_code,
                error=outcome.error,
            )
            for outcome in outcomes
        ],
    )


@router.get("/bookings", response_model=list[BookingResponse])
def list_my_bookings(
    since: datetime | None = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return BookingFeed(db).list_for_user(user_id, since=since)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_my_booking(
    booking_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return BookingFeed(db).get_for_user(booking_id, user_id)
    except LastMinError as exc:
        _raise_http(exc)


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout_session(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    service = CheckoutService(db, gateway)
    try:
        handle = service.create_checkout_session(
            request.activity_id,
            request.number_of_spots,
            user_id,
        )
    except LastMinError as exc:
        _raise_http(exc)

    return CheckoutResponse(session_id=handle.session_id, url=handle.url)


@router.post("/payments/create-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    service = CheckoutService(db, gateway)
    try:
        client_secret = service.create_payment_intent(
            request.activity_id,
            request.number_of_spots,
            user_id,
        )
    except LastMinError as exc:
        _raise_http(exc)

    return PaymentIntentResponse(client_secret=client_secret)


@router.post("/provider/check-in", response_model=BookingResponse)
def check_in_booking(
    request: CheckInRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return BookingFeed(db).check_in(request.qr_code, user_id)
    except LastMinError as exc:
        _raise_http(exc)


@router.get("/provider/bookings", response_model=list[BookingResponse])
def list_provider_bookings(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return BookingFeed(db).list_for_provider(user_id)
    except LastMinError as exc:
        _raise_http(exc)
