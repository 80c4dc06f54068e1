from decimal import Decimal

from lastmin.application.notification_dispatcher import (
    QR_CONTENT_ID,
    Audience,
    NotificationDispatcher,
    format_price,
)
from lastmin.infrastructure.db.models import Booking
from lastmin.infrastructure.mail.smtp_transport import EmailAttachment, OutgoingEmail, SmtpMailTransport


def test_format_price():
    assert format_price(Decimal("1234.5")) == "$1,234.50"
    assert format_price(None) == "-"


def test_customer_email_embeds_check_in_code(db, activity, make_booking, dispatcher, mail_transport):
    booking_id = make_booking(activity, "pi_mail", number_of_spots=3)

    outcome = dispatcher.notify(booking_id, Audience.CUSTOMER)

    assert outcome.sent is True
    [email] = mail_transport.sent
    assert email.recipient == "casey@example.com"
    assert email.subject == "Booking Confirmed: Sunset Kayak Tour"
    assert f"cid:{QR_CONTENT_ID}" in email.html_body
    assert "$60.00" in email.html_body
    assert "3 spots" in email.text_body
    assert f"http://app.test/bookings/{booking_id}" in email.text_body

    [attachment] = email.attachments
    assert attachment.content_id == QR_CONTENT_ID
    assert attachment.content_type == "image/png"
    assert attachment.data.startswith(b"\x89PNG")


def test_provider_email_goes_to_provider_contact(db, activity, make_booking, dispatcher, mail_transport):
    booking_id = make_booking(activity, "pi_provider")

    outcome = dispatcher.notify(booking_id, Audience.PROVIDER)

    assert outcome.sent is True
    [email] = mail_transport.sent
    assert email.recipient == "bookings@harborkayak.test"
    assert email.subject == "New Booking: Sunset Kayak Tour"
    assert "Casey Rivera" in email.html_body
    assert "1 spot" in email.text_body


def test_provider_email_falls_back_to_owner(db, provider, activity, make_booking, dispatcher, mail_transport):
    provider.email = None
    db.commit()
    booking_id = make_booking(activity, "pi_owner")

    outcome = dispatcher.notify(booking_id, Audience.PROVIDER)

    assert outcome.sent is True
    assert mail_transport.sent[0].recipient == "owner@harborkayak.test"


def test_missing_customer_email_is_reported(db, customer, activity, make_booking, dispatcher, mail_transport):
    customer.email = None
    db.commit()
    booking_id = make_booking(activity, "pi_noemail")

    outcome = dispatcher.notify(booking_id, Audience.CUSTOMER)

    assert outcome.sent is False
    assert outcome.error_code == "recipient_not_found"
    assert mail_transport.sent == []


def test_unconfigured_mail_never_raises(db, session_factory, activity, make_booking):
    booking_id = make_booking(activity, "pi_nosmtp")
    dispatcher = NotificationDispatcher(
        session_factory=session_factory,
        transport=SmtpMailTransport(host="", sender=""),
    )

    outcomes = dispatcher.notify_all(booking_id)

    assert [outcome.audience for outcome in outcomes] == [Audience.CUSTOMER, Audience.PROVIDER]
    assert all(not outcome.sent for outcome in outcomes)
    assert {outcome.error_code for outcome in outcomes} == {"mail_service_unavailable"}


def test_failing_transport_is_swallowed(db, activity, make_booking, dispatcher, mail_transport):
    booking_id = make_booking(activity, "pi_down")
    mail_transport.fail = True

    outcome = dispatcher.notify(booking_id, Audience.CUSTOMER)

    assert outcome.sent is False
    assert outcome.error_code == "mail_service_unavailable"
    assert db.get(Booking, booking_id) is not None


def test_unknown_booking(dispatcher, mail_transport):
    outcome = dispatcher.notify("no-such-booking", Audience.CUSTOMER)

    assert outcome.sent is False
    assert outcome.error_code == "booking_not_found"


def test_inline_attachment_is_related_to_html_part():
    transport = SmtpMailTransport(host="smtp.test", sender="noreply@lastmin.test")
    email = OutgoingEmail(
        subject="Booking Confirmed: Test",
        recipient="casey@example.com",
        html_body='<img src="cid:checkin-qr">',
        text_body="plain",
        attachments=(
            EmailAttachment(
                filename="check-in.png",
                content_type="image/png",
                data=b"\x89PNG fake",
                content_id="checkin-qr",
            ),
        ),
    )

    message = transport._build_message(email)

    assert message["To"] == "casey@example.com"
    assert message["From"] == "noreply@lastmin.test"
    content_ids = [part["Content-ID"] for part in message.walk() if part["Content-ID"]]
    assert content_ids == ["<checkin-qr>"]
    assert any(part.get_content_type() == "multipart/related" for part in message.walk())
