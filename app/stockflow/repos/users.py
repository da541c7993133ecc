import uuid

from sqlalchemy import func, or_, select

from app.stockflow.db.models import User


class UserRepository:
    def __init__(self, db):
        self.db = db

    def get_by_id(self, user_id: str):
        try:
            key = uuid.UUID(str(user_id))
        except ValueError:
            return None
        return self.db.get(User, key)

    def list_by_username_or_email(self, identifier: str) -> list[User]:
        normalized = identifier.strip().lower()
        stmt = select(User).where(
            or_(func.lower(User.username) == normalized, func.lower(User.email) == normalized)
        )
        return self.db.execute(stmt).scalars().all()
