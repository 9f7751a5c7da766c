"""User profile lookups for formatting responses."""
from datetime import datetime
from typing import Dict, Iterable, Optional
from sqlalchemy import update
from sqlmodel import Session, select

from app.core.errors import NotFoundError
from app.models.user import User


class UserDirectory:
    """Resolves user ids to display fields."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str) -> Optional[User]:
        return self.db.get(User, user_id)

    def require(self, user_id: str, label: str = "User") -> User:
        user = self.get(user_id)
        if user is None:
            raise NotFoundError(f"{label} not found", details={"user_id": user_id})
        return user

    def profiles(self, user_ids: Iterable[str]) -> Dict[str, User]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        users = self.db.exec(select(User).where(User.id.in_(ids))).all()
        return {user.id: user for user in users}

    def active_user_ids(self) -> list[str]:
        return list(self.db.exec(select(User.id).where(User.is_active == True)).all())  # noqa: E712

    def touch_last_active(self, user_id: str, when: Optional[datetime] = None) -> None:
        self.db.exec(
            update(User)
            .where(User.id == user_id)
            .values(last_active_at=when or datetime.utcnow())
        )
        self.db.commit()
