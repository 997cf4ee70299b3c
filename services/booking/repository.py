"""
services/booking/repository.py
Storage access for bookings. No business rules live here: the workflow decides,
the repository reads and writes.
"""

import uuid
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shared.models.models import ACTIVE_BOOKING_STATUSES, Booking, BookingStatus, utcnow


class BookingRepository:
    """Booking table access bound to one AsyncSession."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, booking: Booking) -> Booking:
        self.db.add(booking)
        await self.db.flush()
        return booking

    async def find_by_id(self, booking_id: uuid.UUID, refresh: bool = False) -> Optional[Booking]:
        """
        Fetch one booking with its patient and driver loaded.
        `refresh=True` overwrites any stale copy held in the session identity map,
        which is needed after a conditional UPDATE.
        """
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .options(selectinload(Booking.patient), selectinload(Booking.driver))
        )
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_filter(
        self,
        patient_id: Optional[uuid.UUID] = None,
        driver_id: Optional[uuid.UUID] = None,
        status: Optional[BookingStatus] = None,
        offset: int = 0,
        limit: int = 100,
    ) -> List[Booking]:
        """Newest first."""
        stmt = select(Booking).options(
            selectinload(Booking.patient), selectinload(Booking.driver)
        )
        if patient_id is not None:
            stmt = stmt.where(Booking.patient_id == patient_id)
        if driver_id is not None:
            stmt = stmt.where(Booking.driver_id == driver_id)
        if status is not None:
            stmt = stmt.where(Booking.status == status)
        stmt = stmt.order_by(Booking.created_at.desc()).offset(offset).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def find_active_for_driver(self, driver_id: uuid.UUID) -> List[Booking]:
        """Bookings currently holding this driver (assigned, en_route, arrived)."""
        result = await self.db.execute(
            select(Booking)
            .where(
                Booking.driver_id == driver_id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            )
            .order_by(Booking.created_at.desc())
        )
        return list(result.scalars().all())

    async def save(
        self,
        booking_id: uuid.UUID,
        expected_status: BookingStatus,
        **values,
    ) -> bool:
        """
        Conditional write: applies `values` only if the row still has
        `expected_status`. Returns False when another request changed it first.
        """
        values.setdefault("updated_at", utcnow())
        result = await self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def save_feedback(
        self,
        booking_id: uuid.UUID,
        rating: int,
        comment: Optional[str],
    ) -> bool:
        """Records feedback once. Returns False if feedback was already present."""
        now = utcnow()
        result = await self.db.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.status == BookingStatus.COMPLETED,
                Booking.feedback_rating.is_(None),
            )
            .values(
                feedback_rating=rating,
                feedback_comment=comment,
                feedback_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
