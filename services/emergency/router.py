"""
services/emergency/router.py
One-tap emergency alert: creates a critical booking and alerts every admin
and every available driver.
"""

from fastapi import APIRouter, Depends, status

from services.booking.router import get_workflow
from services.booking.workflow import BookingWorkflow
from shared.middleware.auth import RequestContext, require_patient
from shared.schemas.schemas import BookingResponse, EmergencyAlertRequest

router = APIRouter(prefix="/emergency-alert", tags=["Emergency"])


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_emergency_alert(
    data: EmergencyAlertRequest,
    ctx: RequestContext = Depends(require_patient),
    workflow: BookingWorkflow = Depends(get_workflow),
):
    booking = await workflow.create_emergency_alert(
        ctx, data.location, data.message, address=data.address
    )
    return BookingResponse.from_booking(booking)
