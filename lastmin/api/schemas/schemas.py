from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field


class SessionSyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)


class IntentSyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_intent_id: str = Field(alias="paymentIntentId", min_length=1)


class ReconcileResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(alias="bookingId")
    created: bool
    message: str


class SyncRecentResponse(BaseModel):
    synced: bool
    count: int


class CheckoutRequest(BaseModel):
    activity_id: str
    number_of_spots: int = Field(gt=0)


class CheckoutResponse(BaseModel):
    session_id: str
    url: str | None


class PaymentIntentResponse(BaseModel):
    client_secret: str


class ActivitySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    location: str | None
    activity_start_time: datetime
    activity_end_time: datetime | None


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    activity_id: str
    provider_id: str
    number_of_spots: int
    price_per_spot: Decimal
    total_price: Decimal
    payment_intent_id: str
    payment_status: str
    status: str
    qr_code: str
    checked_in: bool
    checked_in_at: datetime | None
    booked_at: datetime
    activity: ActivitySummary


class CheckInRequest(BaseModel):
    qr_code: str = Field(min_length=1)


class TestEmailRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(alias="bookingId", min_length=1)


class DeliveryOutcomeResponse(BaseModel):
    audience: str
    sent: bool
    error_code: str | None = None
    error: str | None = None


class TestEmailResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_id: str = Field(alias="bookingId")
    results: list[DeliveryOutcomeResponse]
