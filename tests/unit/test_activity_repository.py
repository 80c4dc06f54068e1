from lastmin.domain.state_machine import ActivityStatus
from lastmin.infrastructure.repositories.activity_repository import ActivityRepository


def test_reserve_spots_decrements_and_keeps_active(db, make_activity):
    activity = make_activity(available_spots=5)

    assert ActivityRepository(db).reserve_spots(activity.id, 2) is True
    db.commit()

    db.refresh(activity)
    assert activity.available_spots == 3
    assert activity.status == ActivityStatus.ACTIVE.value


def test_reserve_last_spots_flips_to_sold_out(db, make_activity):
    activity = make_activity(available_spots=2)

    assert ActivityRepository(db).reserve_spots(activity.id, 2) is True
    db.commit()

    db.refresh(activity)
    assert activity.available_spots == 0
    assert activity.status == ActivityStatus.SOLD_OUT.value


def test_reserve_more_than_available_changes_nothing(db, make_activity):
    activity = make_activity(available_spots=1)

    assert ActivityRepository(db).reserve_spots(activity.id, 2) is False
    db.commit()

    db.refresh(activity)
    assert activity.available_spots == 1
    assert activity.status == ActivityStatus.ACTIVE.value


def test_reserve_to_zero_keeps_non_active_status(db, make_activity):
    activity = make_activity(available_spots=1, status=ActivityStatus.CANCELLED)

    assert ActivityRepository(db).reserve_spots(activity.id, 1) is True
    db.commit()

    db.refresh(activity)
    assert activity.available_spots == 0
    assert activity.status == ActivityStatus.CANCELLED.value


def test_reserve_unknown_activity(db, provider):
    assert ActivityRepository(db).reserve_spots("missing-activity", 1) is False
