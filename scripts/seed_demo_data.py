from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from lastmin.domain.state_machine import ActivityStatus
from lastmin.infrastructure.db.models import Activity, Base, Profile, Provider
from lastmin.infrastructure.db.session import SessionLocal, engine


def _hours_from_now(hours: int) -> datetime:
    now = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
    return now + timedelta(hours=hours)


def seed_profiles(db) -> None:
    profiles = [
        {"id": "demo-customer", "email": "customer@example.com", "full_name": "Demo Customer"},
        {"id": "demo-provider", "email": "owner@example.com", "full_name": "Demo Provider Owner"},
    ]
    for item in profiles:
        existing = db.get(Profile, item["id"])
        if existing:
            existing.email = item["email"]
            existing.full_name = item["full_name"]
            continue
        db.add(Profile(**item))
    db.flush()


def seed_provider(db) -> Provider:
    provider = db.execute(
        select(Provider).where(Provider.user_id == "demo-provider")
    ).unique().scalar_one_or_none()
    if provider:
        return provider

    provider = Provider(
        user_id="demo-provider",
        name="Harbor Kayak Co.",
        email="bookings@harborkayak.example.com",
        phone="+1 555 0100",
        address="12 Pier Road",
        city="Seattle",
    )
    db.add(provider)
    db.flush()
    return provider


def seed_activities(db, provider: Provider) -> None:
    activity_defs = [
        {
            "title": "Sunset Kayak Tour",
            "description": "Two hours on the bay with a guide. Gear included.",
            "location": "Pier 12, Seattle",
            "total_spots": 8,
            "regular_price": Decimal("65.00"),
            "discount_price": Decimal("39.00"),
            "booking_deadline": _hours_from_now(5),
            "activity_start_time": _hours_from_now(6),
            "activity_end_time": _hours_from_now(8),
        },
        {
            "title": "Morning Paddleboard Lesson",
            "description": "Beginner-friendly lesson in calm water.",
            "location": "Alki Beach, Seattle",
            "total_spots": 4,
            "regular_price": Decimal("50.00"),
            "discount_price": Decimal("20.00"),
            "booking_deadline": _hours_from_now(18),
            "activity_start_time": _hours_from_now(20),
            "activity_end_time": None,
        },
    ]

    for item in activity_defs:
        existing = db.execute(
            select(Activity)
            .where(Activity.provider_id == provider.id)
            .where(Activity.title == item["title"])
        ).unique().scalar_one_or_none()
        if existing:
            for key, value in item.items():
                setattr(existing, key, value)
            existing.available_spots = item["total_spots"]
            existing.status = ActivityStatus.ACTIVE.value
            continue

        db.add(
            Activity(
                provider_id=provider.id,
                available_spots=item["total_spots"],
                status=ActivityStatus.ACTIVE.value,
                **item,
            )
        )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_profiles(db)
        provider = seed_provider(db)
        seed_activities(db, provider)
        db.commit()
        print("Seed complete: demo customer, Harbor Kayak Co. and two last-minute activities added.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
