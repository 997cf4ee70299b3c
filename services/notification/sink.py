"""
services/notification/sink.py
In-app notification storage. The booking workflow writes through here as a side
effect of booking events; the notifications router reads and marks them.
"""

import uuid
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Notification, NotificationKind, utcnow
from shared.utils.exceptions import AuthorizationError, NotFoundError


# ── Templates ─────────────────────────────────────────────────

TEMPLATES = {
    "BOOKING_CREATED": {
        "title": "New Booking Request",
        "message": "New {priority} priority booking from {patient_name}: {pickup} to {destination}.",
    },
    "BOOKING_ASSIGNED_PATIENT": {
        "title": "Ambulance Assigned",
        "message": "{driver_name} has been assigned to your booking. Estimated arrival: {eta}.",
    },
    "BOOKING_ASSIGNED_DRIVER": {
        "title": "New Assignment",
        "message": "You have been assigned to pick up {patient_name} at {pickup}.",
    },
    "BOOKING_EN_ROUTE": {
        "title": "Ambulance En Route",
        "message": "Your ambulance is on the way to {pickup}.",
    },
    "BOOKING_ARRIVED": {
        "title": "Ambulance Arrived",
        "message": "Your ambulance has arrived at {pickup}.",
    },
    "BOOKING_COMPLETED": {
        "title": "Trip Completed",
        "message": "Your trip to {destination} is complete. Please rate your experience.",
    },
    "BOOKING_CANCELLED": {
        "title": "Booking Cancelled",
        "message": "Booking for {patient_name} was cancelled by the {cancelled_by}. {reason}",
    },
    "EMERGENCY_ALERT": {
        "title": "EMERGENCY ALERT",
        "message": "Emergency from {patient_name} at {pickup}: {message}",
    },
}


def render(template_key: str, **template_vars) -> tuple[str, str]:
    template = TEMPLATES[template_key]
    title = template["title"].format(**template_vars)
    message = template["message"].format(**template_vars).strip()
    return title, message


class NotificationSink:
    """Notification table access bound to one AsyncSession."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(
        self,
        user_id: uuid.UUID,
        kind: NotificationKind,
        title: str,
        message: str,
        link: Optional[str] = None,
        booking_id: Optional[uuid.UUID] = None,
    ) -> Notification:
        notif = Notification(
            user_id=user_id,
            booking_id=booking_id,
            kind=kind,
            title=title,
            message=message,
            link=link,
        )
        self.db.add(notif)
        await self.db.flush()
        return notif

    async def notify(
        self,
        user_id: uuid.UUID,
        template_key: str,
        kind: NotificationKind = NotificationKind.BOOKING,
        booking_id: Optional[uuid.UUID] = None,
        **template_vars,
    ) -> Notification:
        """Render a template and store it for one user."""
        title, message = render(template_key, **template_vars)
        link = f"/bookings/{booking_id}" if booking_id else None
        return await self.create(user_id, kind, title, message, link=link, booking_id=booking_id)

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        limit: int = 50,
        unread_only: bool = False,
    ) -> List[Notification]:
        """Newest first."""
        query = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc())
        )
        if unread_only:
            query = query.where(Notification.is_read.is_(False))
        result = await self.db.execute(query.limit(limit))
        return list(result.scalars().all())

    async def mark_read(self, notification_id: uuid.UUID, user_id: uuid.UUID) -> Notification:
        """Only the owning user may mark a notification read."""
        notif = await self.db.get(Notification, notification_id)
        if notif is None:
            raise NotFoundError("Notification not found")
        if notif.user_id != user_id:
            raise AuthorizationError("Access denied")
        if not notif.is_read:
            notif.is_read = True
            notif.read_at = utcnow()
            await self.db.flush()
        return notif

    async def mark_all_read(self, user_id: uuid.UUID) -> int:
        result = await self.db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def unread_count(self, user_id: uuid.UUID) -> int:
        count = await self.db.scalar(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            )
        )
        return count or 0
