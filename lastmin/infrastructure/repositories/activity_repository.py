# lastmin/infrastructure/repositories/activity_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select, update, case, and_

from lastmin.infrastructure.db.models import Activity
from lastmin.domain.state_machine import ActivityStatus


class ActivityRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, activity_id: str) -> Activity | None:
        stmt = select(Activity).where(Activity.id == activity_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def reserve_spots(
        self,
        activity_id: str,
        number_of_spots: int,
    ) -> bool:
        """
        UPDATE ... WHERE available_spots >= :n
        Decrements and flips an active activity to sold_out in one
        statement. Returns False when the row no longer has enough
        spots, so concurrent callers can never drive it negative.
        """

        stmt = (
            update(Activity)
            .where(Activity.id == activity_id)
            .where(Activity.available_spots >= number_of_spots)
            .values(
                available_spots=Activity.available_spots - number_of_spots,
                status=case(
                    (
                        and_(
                            Activity.available_spots == number_of_spots,
                            Activity.status == ActivityStatus.ACTIVE.value,
                        ),
                        ActivityStatus.SOLD_OUT.value,
                    ),
                    else_=Activity.status,
                ),
            )
            .execution_options(synchronize_session=False)
        )

        result = self.db.execute(stmt)
        return result.rowcount == 1
