"""
services/user/repository.py
Storage access for accounts of every role, including driver availability,
last known location and aggregate rating.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import User, UserRole, utcnow
from shared.utils.exceptions import ConflictError


class UserRepository:
    """User table access bound to one AsyncSession."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def find_by_id(self, user_id: uuid.UUID, refresh: bool = False) -> Optional[User]:
        stmt = select(User).where(User.id == user_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email.lower()))
        return result.scalar_one_or_none()

    async def find_by_role(
        self,
        role: UserRole,
        available: Optional[bool] = None,
    ) -> List[User]:
        stmt = select(User).where(User.role == role, User.is_active.is_(True))
        if available is not None:
            stmt = stmt.where(User.available.is_(available))
        result = await self.db.execute(stmt.order_by(User.name))
        return list(result.scalars().all())

    async def create(self, user: User) -> User:
        """Insert a new account. The email is the unique contact identifier."""
        user.email = user.email.lower()
        if user.role == UserRole.DRIVER and user.available is None:
            user.available = True
        self.db.add(user)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("User already exists")
        return user

    async def update_availability(
        self,
        user_id: uuid.UUID,
        available: bool,
        expected: Optional[bool] = None,
    ) -> bool:
        """
        Set the driver's availability flag. With `expected`, the write only lands
        if the current flag still matches (used to stop double-booking a driver).
        """
        stmt = update(User).where(User.id == user_id, User.role == UserRole.DRIVER)
        if expected is not None:
            stmt = stmt.where(User.available.is_(expected))
        result = await self.db.execute(
            stmt.values(available=available, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_location(
        self,
        user_id: uuid.UUID,
        lat: float,
        lng: float,
        timestamp: datetime,
    ) -> bool:
        """
        Last-writer-wins by payload timestamp. Returns False when a newer
        location is already stored, in which case nothing changes.
        """
        result = await self.db.execute(
            update(User)
            .where(
                User.id == user_id,
                or_(
                    User.location_updated_at.is_(None),
                    User.location_updated_at <= timestamp,
                ),
            )
            .values(
                location_lat=lat,
                location_lng=lng,
                location_updated_at=timestamp,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_rating(
        self,
        user_id: uuid.UUID,
        new_avg: float,
        new_count: int,
        expected_count: int,
    ) -> bool:
        """Conditional on the ride count read before the average was computed."""
        result = await self.db.execute(
            update(User)
            .where(User.id == user_id, User.total_rides == expected_count)
            .values(rating=new_avg, total_rides=new_count, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
