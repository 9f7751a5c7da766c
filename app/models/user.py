"""User and friendship models for SQLModel.

Both tables belong to the identity and friend-graph collaborators; the
messaging subsystem only reads them (and stamps ``last_active_at``).
"""
from sqlmodel import SQLModel, Field, UniqueConstraint
from datetime import datetime
from typing import Optional
import uuid


class User(SQLModel, table=True):
    """User entity referenced by messages and conversations."""

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
        index=True
    )
    email: str = Field(unique=True, index=True, max_length=255)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    profile_picture: Optional[str] = Field(default=None, max_length=500)
    is_active: bool = Field(default=True)
    last_active_at: Optional[datetime] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Friendship(SQLModel, table=True):
    """Confirmed mutual friendship, stored once per unordered pair."""

    __tablename__ = "friendships"
    __table_args__ = (UniqueConstraint("user_one_id", "user_two_id", name="uq_friendship_pair"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_one_id: str = Field(foreign_key="user.id", index=True)
    user_two_id: str = Field(foreign_key="user.id", index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
