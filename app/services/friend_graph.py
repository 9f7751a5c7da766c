"""
Friend graph adapter.

Friendship management is owned elsewhere; messaging only asks whether two
users are friends and who a user's friends are.
"""

from typing import Set
from sqlmodel import Session, select, or_

from app.models.user import Friendship


class FriendGraph:
    """Read-mostly view over the friendships table"""

    def __init__(self, db: Session):
        self.db = db

    def are_friends(self, user_a: str, user_b: str) -> bool:
        if user_a == user_b:
            return False
        first, second = sorted([user_a, user_b])
        statement = select(Friendship.id).where(
            Friendship.user_one_id == first,
            Friendship.user_two_id == second
        )
        return self.db.exec(statement).first() is not None

    def friends_of(self, user_id: str) -> Set[str]:
        statement = select(Friendship).where(
            or_(Friendship.user_one_id == user_id, Friendship.user_two_id == user_id)
        )
        friends = set()
        for friendship in self.db.exec(statement).all():
            friends.add(
                friendship.user_two_id if friendship.user_one_id == user_id else friendship.user_one_id
            )
        return friends

    def add(self, user_a: str, user_b: str) -> Friendship:
        """Record a friendship (idempotent); used by seeding and tests."""
        first, second = sorted([user_a, user_b])
        existing = self.db.exec(
            select(Friendship).where(
                Friendship.user_one_id == first,
                Friendship.user_two_id == second
            )
        ).first()
        if existing:
            return existing

        friendship = Friendship(user_one_id=first, user_two_id=second)
        self.db.add(friendship)
        self.db.commit()
        self.db.refresh(friendship)
        return friendship
