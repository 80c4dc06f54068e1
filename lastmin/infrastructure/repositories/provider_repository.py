# lastmin/infrastructure/repositories/provider_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from lastmin.infrastructure.db.models import Provider


class ProviderRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_user_id(self, user_id: str) -> Provider | None:
        stmt = select(Provider).where(Provider.user_id == user_id)
        return self.db.execute(stmt).unique().scalar_one_or_none()
