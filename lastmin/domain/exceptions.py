class LastMinError(Exception):
    """
    Base exception for all domain-level errors
    inside the Last-Min booking service.
    """

    code = "lastmin_error"


class ReconciliationError(LastMinError):
    """Raised when a payment cannot be turned into a booking."""

    code = "reconciliation_error"


class PaymentNotCompletedError(ReconciliationError):
    code = "payment_not_completed"

    def __init__(self, gateway_status: str | None):
        self.gateway_status = gateway_status
        super().__init__(f"Payment not completed (status: {gateway_status})")


class MissingPaymentReferenceError(ReconciliationError):
    code = "missing_payment_reference"

    def __init__(self):
        super().__init__("No payment intent found for this payment")


class InvalidMetadataError(ReconciliationError):
    """Raised when the metadata envelope is missing or malformed."""

    code = "invalid_metadata"


class OwnershipMismatchError(ReconciliationError):
    """Raised when a client syncs a payment made by somebody else."""

    code = "forbidden"


class ActivityNotFoundError(ReconciliationError):
    code = "activity_not_found"

    def __init__(self, activity_id: str):
        self.activity_id = activity_id
        super().__init__(f"Activity {activity_id} not found")


class InsufficientSpotsError(ReconciliationError):
    code = "insufficient_spots"

    def __init__(self, activity_id: str, requested: int, available: int | None = None):
        self.activity_id = activity_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Not enough spots on activity {activity_id}: "
            f"requested {requested}, available {available if available is not None else 'unknown'}"
        )


class UpstreamGatewayError(ReconciliationError):
    """Raised when the payment gateway fails to respond or resolve."""

    code = "upstream_gateway_error"


class BookingRejectedError(ReconciliationError):
    """Raised when the database refuses a booking for a reason other than a duplicate payment."""

    code = "booking_rejected"



class ActivityNotBookableError(LastMinError):
    """Raised at checkout when an activity is closed for booking."""

    code = "activity_not_bookable"


class BookingNotFoundError(LastMinError):
    code = "booking_not_found"

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Booking {reference} not found")


class AlreadyCheckedInError(LastMinError):
    code = "already_checked_in"

    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} is already checked in")


class BookingNotCheckableError(LastMinError):
    """Raised when a cancelled or unpaid booking is presented at check-in."""

    code = "booking_not_checkable"


class InvalidPaymentStatusTransitionError(LastMinError):
    """
    Raised when an illegal payment status transition is attempted.
    """

    code = "invalid_payment_status_transition"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal payment status transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class NotificationError(LastMinError):
    """Base class for failures of the best-effort email notifications."""

    code = "notification_error"


class RecipientNotFoundError(NotificationError):
    code = "recipient_not_found"


class MailServiceUnavailableError(NotificationError):
    code = "mail_service_unavailable"


class InvalidWebhookError(LastMinError):
    """Raised when a webhook body is unparsable or its signature does not verify."""

    code = "invalid_webhook"
