"""
services/driver/router.py
Driver directory, live location and availability.
"""

import logging
from datetime import timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.repository import BookingRepository
from services.realtime.broadcaster import (
    Broadcaster,
    Scope,
    booking_room,
    get_broadcaster,
    role_room,
)
from services.user.repository import UserRepository
from shared.middleware.auth import RequestContext, get_request_context, require_driver
from shared.models.models import UserRole, utcnow
from shared.schemas.schemas import (
    DriverAvailabilityUpdate,
    DriverLocationResponse,
    DriverLocationUpdate,
    DriverResponse,
    GeoPoint,
    MessageResponse,
)
from shared.utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/drivers", tags=["Drivers"])


@router.get("", response_model=List[DriverResponse])
async def list_drivers(
    available: Optional[bool] = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    """All active drivers ordered by name. Credentials are never serialized."""
    drivers = await UserRepository(db).find_by_role(UserRole.DRIVER, available=available)
    return [DriverResponse.model_validate(d) for d in drivers]


@router.patch("/location", response_model=DriverLocationResponse)
async def update_location(
    data: DriverLocationUpdate,
    ctx: RequestContext = Depends(require_driver),
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """
    Last-writer-wins by the payload timestamp (server time when absent).
    An update older than the stored location is ignored and reported as such.
    """
    timestamp = data.location.timestamp or utcnow()
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    timestamp = timestamp.astimezone(timezone.utc)

    applied = await UserRepository(db).update_location(
        ctx.user_id, data.location.lat, data.location.lng, timestamp
    )
    if not applied:
        logger.debug(f"Stale location from driver {ctx.user_id} ignored ({timestamp.isoformat()})")
        return DriverLocationResponse(message="Newer location already recorded", applied=False)

    active = await BookingRepository(db).find_active_for_driver(ctx.user_id)
    await db.commit()

    location = GeoPoint(lat=data.location.lat, lng=data.location.lng, timestamp=timestamp)
    payload = {
        "driverId": str(ctx.user_id),
        "location": location.model_dump(mode="json", by_alias=True),
    }
    rooms = [role_room(UserRole.ADMIN)] + [booking_room(b.id) for b in active]
    try:
        await broadcaster.publish("driverLocationUpdated", payload, Scope.room(*rooms))
    except Exception:
        logger.warning("Broadcast of driverLocationUpdated failed", exc_info=True)

    return DriverLocationResponse(message="Location updated", applied=True, location=location)


@router.patch("/availability", response_model=MessageResponse)
async def update_availability(
    data: DriverAvailabilityUpdate,
    ctx: RequestContext = Depends(require_driver),
    db: AsyncSession = Depends(get_db),
):
    """A driver holding an active booking cannot change availability by hand."""
    if await BookingRepository(db).find_active_for_driver(ctx.user_id):
        raise ValidationError("Cannot change availability while a booking is active")
    await UserRepository(db).update_availability(ctx.user_id, data.available)
    await db.commit()
    logger.info(f"Driver {ctx.user_id} availability set to {data.available}")
    return MessageResponse(
        message="You are now available" if data.available else "You are now unavailable"
    )
