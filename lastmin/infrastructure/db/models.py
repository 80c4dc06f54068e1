# lastmin/infrastructure/db/models.py

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    DateTime,
    Numeric,
    Text,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from lastmin.infrastructure.db.session import Base
from lastmin.domain.state_machine import ActivityStatus, BookingStatus, PaymentStatus


class Profile(Base):
    """
    Customer-facing identity record. The id is the auth provider's user id.
    """

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    full_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class Provider(Base):
    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("profiles.id"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    owner: Mapped[Profile] = relationship(lazy="joined")

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_provider_user_id"),
    )


class Activity(Base):
    """
    One bookable, time-boxed offering.
    available_spots is only ever changed through
    ActivityRepository.reserve_spots, which keeps it non-negative.
    """

    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    provider_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("providers.id"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_spots: Mapped[int] = mapped_column(Integer, nullable=False)
    available_spots: Mapped[int] = mapped_column(Integer, nullable=False)
    regular_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    booking_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    activity_start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    activity_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=ActivityStatus.ACTIVE.value,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    provider: Mapped[Provider] = relationship(lazy="joined")

    __table_args__ = (
        CheckConstraint("total_spots >= 1", name="ck_activity_total_spots_positive"),
        CheckConstraint("available_spots >= 0", name="ck_activity_available_spots_nonnegative"),
        CheckConstraint("available_spots <= total_spots", name="ck_activity_available_lte_total"),
        CheckConstraint("discount_price < regular_price", name="ck_activity_discount_below_regular"),
        CheckConstraint(
            "status IN ('active', 'sold_out', 'cancelled', 'expired')",
            name="ck_activity_status",
        ),
    )


class Booking(Base):
    """
    One confirmed purchase of N spots on one activity.
    payment_intent_id is the idempotency key: the unique constraint
    is what guarantees at most one booking per payment.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("profiles.id"),
        nullable=False,
    )
    activity_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("activities.id"),
        nullable=False,
    )
    provider_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("providers.id"),
        nullable=False,
    )
    number_of_spots: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_spot: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_intent_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=PaymentStatus.PAID.value,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=BookingStatus.CONFIRMED.value,
    )
    qr_code: Mapped[str] = mapped_column(String(64), nullable=False)
    checked_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    booked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    activity: Mapped[Activity] = relationship(lazy="joined")
    provider: Mapped[Provider] = relationship(lazy="joined")
    customer: Mapped[Profile] = relationship(lazy="joined")

    __table_args__ = (
        UniqueConstraint(
            "payment_intent_id",
            name="uq_booking_payment_intent_id",
        ),
        UniqueConstraint("qr_code", name="uq_booking_qr_code"),
        CheckConstraint(
            "number_of_spots > 0",
            name="ck_booking_spots_positive",
        ),
        CheckConstraint(
            "payment_status IN ('pending', 'paid', 'failed')",
            name="ck_booking_payment_status",
        ),
        CheckConstraint(
            "status IN ('confirmed', 'cancelled')",
            name="ck_booking_status",
        ),
        Index("ix_bookings_user_booked_at", "user_id", "booked_at"),
        Index("ix_bookings_provider_booked_at", "provider_id", "booked_at"),
    )
