"""
services/booking/router.py
Booking lifecycle endpoints. Role checks happen here; every state change is
delegated to BookingWorkflow with the caller's RequestContext.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.repository import BookingRepository
from services.booking.workflow import BookingWorkflow, can_access_booking
from services.realtime.broadcaster import Broadcaster, get_broadcaster
from shared.middleware.auth import (
    RequestContext,
    get_request_context,
    require_admin,
    require_patient,
)
from shared.models.models import Booking, BookingStatus, UserRole
from shared.schemas.schemas import (
    BookingAssignRequest,
    BookingCreateRequest,
    BookingResponse,
    BookingStatusUpdate,
    FeedbackRequest,
)
from shared.utils.exceptions import AuthorizationError, NotFoundError, ValidationError

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Helpers ───────────────────────────────────────────────────

def get_workflow(
    db: AsyncSession = Depends(get_db),
    broadcaster: Broadcaster = Depends(get_broadcaster),
) -> BookingWorkflow:
    return BookingWorkflow(db, broadcaster)


async def _get_booking_or_404(booking_id: UUID, db: AsyncSession) -> Booking:
    booking = await BookingRepository(db).find_by_id(booking_id)
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def _parse_status(value: Optional[str]) -> Optional[BookingStatus]:
    if value is None:
        return None
    try:
        return BookingStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid status: {value}")


# ── Create ────────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    ctx: RequestContext = Depends(require_patient),
    workflow: BookingWorkflow = Depends(get_workflow),
):
    """Create a pending booking and alert the dispatch admins."""
    booking = await workflow.create_booking(ctx, data)
    return BookingResponse.from_booking(booking)


# ── Read ──────────────────────────────────────────────────────

@router.get("", response_model=List[BookingResponse])
async def list_bookings(
    role: Optional[str] = Query(None, pattern="^(patient|driver)$"),
    user_id: Optional[UUID] = Query(None, alias="userId"),
    status_filter: Optional[str] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=200),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    """
    Newest first. Patients and drivers only ever see their own bookings;
    admins see all and may narrow by `role` + `userId`.
    """
    patient_id = driver_id = None
    if ctx.role == UserRole.PATIENT:
        patient_id = ctx.user_id
    elif ctx.role == UserRole.DRIVER:
        driver_id = ctx.user_id
    elif user_id is not None:
        if role == "driver":
            driver_id = user_id
        else:
            patient_id = user_id

    bookings = await BookingRepository(db).find_by_filter(
        patient_id=patient_id,
        driver_id=driver_id,
        status=_parse_status(status_filter),
        offset=skip,
        limit=limit,
    )
    return [BookingResponse.from_booking(b) for b in bookings]


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    booking = await _get_booking_or_404(booking_id, db)
    if not can_access_booking(booking, ctx):
        raise AuthorizationError("Access denied")
    return BookingResponse.from_booking(booking)


# ── State changes ─────────────────────────────────────────────

@router.patch("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    data: BookingStatusUpdate,
    ctx: RequestContext = Depends(get_request_context),
    workflow: BookingWorkflow = Depends(get_workflow),
):
    """Apply one transition of the booking state machine."""
    booking = await workflow.update_status(booking_id, data.status, ctx, reason=data.reason)
    return BookingResponse.from_booking(booking)


@router.patch("/{booking_id}/assign", response_model=BookingResponse)
async def assign_driver(
    booking_id: UUID,
    data: BookingAssignRequest,
    ctx: RequestContext = Depends(require_admin),
    workflow: BookingWorkflow = Depends(get_workflow),
):
    booking = await workflow.assign_driver(booking_id, data.driver_id, ctx)
    return BookingResponse.from_booking(booking)


@router.post("/{booking_id}/feedback", response_model=BookingResponse)
async def submit_feedback(
    booking_id: UUID,
    data: FeedbackRequest,
    ctx: RequestContext = Depends(require_patient),
    workflow: BookingWorkflow = Depends(get_workflow),
):
    booking = await workflow.submit_feedback(booking_id, data.rating, data.comment, ctx)
    return BookingResponse.from_booking(booking)
