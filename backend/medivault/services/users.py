"""User lookups needed by the access workflows."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from medivault.models import User, UserRole


class UserStore(Protocol):
    async def get(self, user_id: int) -> Optional[User]:
        ...

    async def get_many(self, user_ids: Iterable[int]) -> dict[int, User]:
        ...

    async def find_patient_by_code(self, patient_code: str) -> Optional[User]:
        ...


class SQLUserStore:
    """User store backed by SQLAlchemy."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_many(self, user_ids: Iterable[int]) -> dict[int, User]:
        ids = set(user_ids)
        if not ids:
            return {}
        result = await self.db.execute(select(User).where(User.id.in_(ids)))
        return {user.id: user for user in result.scalars().all()}

    async def find_patient_by_code(self, patient_code: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(
                User.patient_code == patient_code,
                User.role == UserRole.patient.value,
                User.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()


class InMemoryUserStore:
    """In-memory user store for tests and local demos."""

    def __init__(self, users: Iterable[User] = ()):
        self._users: dict[int, User] = {user.id: user for user in users}

    def add(self, user: User) -> User:
        self._users[user.id] = user
        return user

    async def get(self, user_id: int) -> Optional[User]:
        return self._users.get(user_id)

    async def get_many(self, user_ids: Iterable[int]) -> dict[int, User]:
        return {uid: self._users[uid] for uid in set(user_ids) if uid in self._users}

    async def find_patient_by_code(self, patient_code: str) -> Optional[User]:
        for user in self._users.values():
            if (
                user.patient_code == patient_code
                and user.role == UserRole.patient.value
                and user.is_active
            ):
                return user
        return None
