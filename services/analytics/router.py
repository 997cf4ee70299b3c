"""
services/analytics/router.py
Admin dashboard aggregates over bookings, drivers and patients.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import RequestContext, require_admin
from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingPriority,
    BookingStatus,
    User,
    UserRole,
)
from shared.schemas.schemas import DashboardResponse, TopDriver

router = APIRouter(prefix="/analytics", tags=["Analytics"])

TOP_DRIVERS_LIMIT = 5


@router.get("/dashboard", response_model=DashboardResponse)
async def get_dashboard(
    ctx: RequestContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    today_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

    total_bookings = await db.scalar(select(func.count(Booking.id)))
    bookings_today = await db.scalar(
        select(func.count(Booking.id)).where(Booking.created_at >= today_start)
    )

    by_status = {s.value: 0 for s in BookingStatus}
    rows = await db.execute(select(Booking.status, func.count(Booking.id)).group_by(Booking.status))
    for booking_status, count in rows:
        by_status[BookingStatus(booking_status).value] = count

    by_priority = {p.value: 0 for p in BookingPriority}
    rows = await db.execute(
        select(Booking.priority, func.count(Booking.id)).group_by(Booking.priority)
    )
    for priority, count in rows:
        by_priority[BookingPriority(priority).value] = count

    total_revenue = await db.scalar(
        select(func.sum(Booking.total_fare)).where(Booking.status == BookingStatus.COMPLETED)
    )
    avg_rating, total_ratings = (
        await db.execute(
            select(func.avg(Booking.feedback_rating), func.count(Booking.feedback_rating))
        )
    ).one()

    total_drivers = await db.scalar(
        select(func.count(User.id)).where(User.role == UserRole.DRIVER)
    )
    available_drivers = await db.scalar(
        select(func.count(User.id)).where(User.role == UserRole.DRIVER, User.available.is_(True))
    )
    total_patients = await db.scalar(
        select(func.count(User.id)).where(User.role == UserRole.PATIENT)
    )

    result = await db.execute(
        select(User)
        # Only drivers with at least one rated ride are ranked
        .where(User.role == UserRole.DRIVER, User.total_rides > 0)
        .order_by(User.rating.desc(), User.total_rides.desc(), User.name)
        .limit(TOP_DRIVERS_LIMIT)
    )
    top_drivers = [TopDriver.model_validate(d) for d in result.scalars()]

    return DashboardResponse(
        total_bookings=total_bookings or 0,
        bookings_today=bookings_today or 0,
        bookings_by_status=by_status,
        priority_distribution=by_priority,
        completed_bookings=by_status[BookingStatus.COMPLETED.value],
        active_bookings=sum(by_status[s.value] for s in ACTIVE_BOOKING_STATUSES),
        total_revenue=round(float(total_revenue or 0), 2),
        average_rating=round(float(avg_rating), 2) if avg_rating is not None else None,
        total_ratings=total_ratings or 0,
        total_drivers=total_drivers or 0,
        available_drivers=available_drivers or 0,
        total_patients=total_patients or 0,
        top_drivers=top_drivers,
    )
