# lastmin/infrastructure/repositories/profile_repository.py

from sqlalchemy.orm import Session

from lastmin.infrastructure.db.models import Profile


class ProfileRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: str) -> Profile | None:
        return self.db.get(Profile, user_id)

    def add_placeholder(self, user_id: str) -> Profile:
        """
        Bare row for a paying user the auth layer never synced.
        Contact details stay empty until the profile is filled in.
        """
        profile = Profile(id=user_id)
        self.db.add(profile)
        self.db.flush()
        return profile
