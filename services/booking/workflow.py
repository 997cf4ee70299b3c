"""
services/booking/workflow.py
Booking workflow engine.

States: pending → assigned → en_route → arrived → completed,
        any non-terminal state → cancelled

Every operation reads through the repositories, validates the caller and the
transition, applies a conditional write (compare-and-swap on status), commits,
and only then publishes events. Broadcast failures are logged and never undo
the committed write.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.pricing import calculate_fare, estimate_arrival, resolve_distance_km
from services.booking.repository import BookingRepository
from services.notification.sink import NotificationSink
from services.realtime.broadcaster import (
    Broadcaster,
    Scope,
    booking_room,
    role_room,
    user_room,
)
from services.user.repository import UserRepository
from shared.middleware.auth import RequestContext
from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingPriority,
    BookingStatus,
    Notification,
    NotificationKind,
    User,
    UserRole,
    utcnow,
)
from shared.schemas.schemas import BookingCreateRequest, BookingResponse, GeoPoint, NotificationResponse
from shared.utils.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from shared.utils.geo import format_lat_lng

logger = logging.getLogger(__name__)


# ── State machine ─────────────────────────────────────────────

TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.ASSIGNED, BookingStatus.CANCELLED},
    BookingStatus.ASSIGNED: {BookingStatus.EN_ROUTE, BookingStatus.CANCELLED},
    BookingStatus.EN_ROUTE: {BookingStatus.ARRIVED, BookingStatus.CANCELLED},
    BookingStatus.ARRIVED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

# Targets a driver may request on a booking assigned to them
DRIVER_TARGETS = {
    BookingStatus.EN_ROUTE,
    BookingStatus.ARRIVED,
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
}

STATUS_TEMPLATES = {
    BookingStatus.EN_ROUTE: "BOOKING_EN_ROUTE",
    BookingStatus.ARRIVED: "BOOKING_ARRIVED",
    BookingStatus.COMPLETED: "BOOKING_COMPLETED",
}

EMERGENCY_DESTINATION = "Nearest hospital (to be confirmed)"


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS[BookingStatus(current)]


def can_access_booking(booking: Booking, ctx: RequestContext) -> bool:
    """
    Admins see everything, patients only their own bookings, drivers any booking
    not held by a different driver.
    """
    if ctx.is_admin:
        return True
    if ctx.is_patient:
        return booking.patient_id == ctx.user_id
    if ctx.is_driver:
        return booking.driver_id is None or booking.driver_id == ctx.user_id
    return False


def timeline_entry(status: BookingStatus, actor_role: UserRole, note: Optional[str] = None) -> dict:
    return {
        "status": BookingStatus(status).value,
        "timestamp": utcnow().isoformat(),
        "actorRole": UserRole(actor_role).value,
        "note": note,
    }


@dataclass
class PendingEvent:
    event: str
    payload: Dict[str, Any]
    scope: Scope


# ── Engine ────────────────────────────────────────────────────

class BookingWorkflow:
    """One instance per request; shares the request's session."""

    def __init__(self, db: AsyncSession, broadcaster: Broadcaster) -> None:
        self.db = db
        self.broadcaster = broadcaster
        self.bookings = BookingRepository(db)
        self.users = UserRepository(db)
        self.notifications = NotificationSink(db)

    # ── Operations ────────────────────────────────────────────

    async def create_booking(self, ctx: RequestContext, data: BookingCreateRequest) -> Booking:
        if not ctx.is_patient:
            raise AuthorizationError("Only patients can create bookings")
        for field_name in ("pickup_address", "destination_address", "medical_condition"):
            if not (getattr(data, field_name) or "").strip():
                raise ValidationError(f"Missing required field: {field_name}")

        patient = await self._get_user(ctx.user_id)
        priority = BookingPriority(data.priority)
        pickup = data.pickup_location
        destination = data.destination_location
        distance_km = resolve_distance_km(
            data.route.distance if data.route else None,
            pickup.lat if pickup else None,
            pickup.lng if pickup else None,
            destination.lat if destination else None,
            destination.lng if destination else None,
        )
        fare = calculate_fare(distance_km, priority)

        booking = Booking(
            patient_id=patient.id,
            patient_name=data.patient_name or patient.name,
            patient_phone=data.patient_phone or patient.phone,
            emergency_contact=data.emergency_contact,
            emergency_contact_phone=data.emergency_contact_phone,
            pickup_address=data.pickup_address,
            pickup_lat=pickup.lat if pickup else None,
            pickup_lng=pickup.lng if pickup else None,
            destination_address=data.destination_address,
            destination_lat=destination.lat if destination else None,
            destination_lng=destination.lng if destination else None,
            route_distance_km=data.route.distance if data.route else None,
            medical_condition=data.medical_condition,
            priority=priority,
            medical_flags=data.medical_flags.model_dump(by_alias=True) if data.medical_flags else None,
            status=BookingStatus.PENDING,
            timeline=[timeline_entry(BookingStatus.PENDING, ctx.role, "Booking created")],
            **fare,
        )
        await self.bookings.create(booking)

        created: List[Notification] = []
        for admin in await self.users.find_by_role(UserRole.ADMIN):
            created.append(await self.notifications.notify(
                admin.id,
                "BOOKING_CREATED",
                booking_id=booking.id,
                priority=priority.value,
                patient_name=booking.patient_name,
                pickup=booking.pickup_address,
                destination=booking.destination_address,
            ))

        await self.db.commit()
        booking = await self._reload(booking.id)
        logger.info(
            f"Booking {booking.id} created by patient {ctx.user_id} "
            f"(priority={priority.value}, fare={booking.total_fare})"
        )

        await self._publish_all(
            [PendingEvent("newBooking", self._payload(booking), Scope.room(role_room(UserRole.ADMIN)))],
            created,
        )
        return booking

    async def assign_driver(
        self,
        booking_id: uuid.UUID,
        driver_id: uuid.UUID,
        ctx: RequestContext,
    ) -> Booking:
        if not ctx.is_admin:
            raise AuthorizationError("Only admins can assign drivers")

        booking = await self._get_booking(booking_id)
        driver = await self.users.find_by_id(driver_id)
        if driver is None:
            raise NotFoundError("Driver not found")
        if driver.role != UserRole.DRIVER:
            raise ValidationError("User is not a driver")
        if booking.status != BookingStatus.PENDING:
            raise ValidationError(
                f"Only pending bookings can be assigned (current status: {BookingStatus(booking.status).value})"
            )
        if not driver.available:
            raise ValidationError("Driver is not available")

        now = utcnow()
        eta = estimate_arrival(
            now, driver.location_lat, driver.location_lng, booking.pickup_lat, booking.pickup_lng
        )
        timeline = list(booking.timeline or []) + [
            timeline_entry(BookingStatus.ASSIGNED, ctx.role, f"Assigned to {driver.name}")
        ]

        applied = await self.bookings.save(
            booking.id,
            BookingStatus.PENDING,
            status=BookingStatus.ASSIGNED,
            driver_id=driver.id,
            estimated_arrival=eta,
            timeline=timeline,
        )
        if not applied:
            await self._conflict(f"Booking {booking.id} changed before assignment")
        if not await self.users.update_availability(driver.id, False, expected=True):
            await self._conflict(
                f"Driver {driver.id} was taken before assignment to {booking.id}",
                "Driver is no longer available",
            )

        created = [
            await self.notifications.notify(
                booking.patient_id,
                "BOOKING_ASSIGNED_PATIENT",
                booking_id=booking.id,
                driver_name=driver.name,
                eta=eta.strftime("%H:%M UTC"),
            ),
            await self.notifications.notify(
                driver.id,
                "BOOKING_ASSIGNED_DRIVER",
                booking_id=booking.id,
                patient_name=booking.patient_name,
                pickup=booking.pickup_address,
            ),
        ]

        await self.db.commit()
        booking = await self._reload(booking.id)
        logger.info(f"Booking {booking.id} assigned to driver {driver.id} by admin {ctx.user_id}")

        await self._publish_all(
            [PendingEvent("bookingUpdated", self._payload(booking), self._booking_scope(booking))],
            created,
        )
        return booking

    async def update_status(
        self,
        booking_id: uuid.UUID,
        new_status: str,
        ctx: RequestContext,
        reason: Optional[str] = None,
    ) -> Booking:
        try:
            target = BookingStatus(new_status)
        except ValueError:
            raise ValidationError(f"Invalid status: {new_status}")

        booking = await self._get_booking(booking_id)
        self._check_status_party(booking, ctx)

        current = BookingStatus(booking.status)
        if not can_transition(current, target):
            raise InvalidTransitionError(
                f"Cannot change status from {current.value} to {target.value}"
            )
        if target == BookingStatus.ASSIGNED:
            raise ValidationError("Drivers are assigned through the assignment endpoint")
        self._check_status_target(target, ctx)

        now = utcnow()
        values: Dict[str, Any] = {
            "status": target,
            "timeline": list(booking.timeline or []) + [
                timeline_entry(target, ctx.role, reason if target == BookingStatus.CANCELLED else None)
            ],
        }
        if target == BookingStatus.ARRIVED:
            values["actual_arrival"] = now
        elif target == BookingStatus.COMPLETED:
            values["completed_at"] = now
        elif target == BookingStatus.CANCELLED:
            values["cancelled_at"] = now
            values["cancelled_by"] = ctx.role.value
            values["cancellation_reason"] = reason

        if not await self.bookings.save(booking.id, current, **values):
            await self._conflict(f"Booking {booking.id} changed before {current.value} → {target.value}")

        # Free the driver when the booking stops holding them
        driver_id = booking.driver_id
        if (
            driver_id is not None
            and current in ACTIVE_BOOKING_STATUSES
            and target in (BookingStatus.COMPLETED, BookingStatus.CANCELLED)
        ):
            await self.users.update_availability(driver_id, True)

        created = await self._status_notifications(booking, target, ctx, reason)

        await self.db.commit()
        booking = await self._reload(booking.id)
        logger.info(
            f"Booking {booking.id}: {current.value} → {target.value} by {ctx.role.value} {ctx.user_id}"
        )

        await self._publish_all(
            [PendingEvent("bookingUpdated", self._payload(booking), self._booking_scope(booking))],
            created,
        )
        return booking

    async def submit_feedback(
        self,
        booking_id: uuid.UUID,
        rating: int,
        comment: Optional[str],
        ctx: RequestContext,
    ) -> Booking:
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5")

        booking = await self._get_booking(booking_id)
        if not ctx.is_patient or booking.patient_id != ctx.user_id:
            raise AuthorizationError("Only the booking's patient can submit feedback")
        if booking.status != BookingStatus.COMPLETED:
            raise AuthorizationError("Feedback can only be submitted for completed bookings")
        if booking.feedback_rating is not None:
            raise ConflictError("Feedback already submitted")

        if not await self.bookings.save_feedback(booking.id, rating, comment):
            await self._conflict(f"Feedback raced on booking {booking.id}", "Feedback already submitted")

        if booking.driver_id is not None:
            driver = await self.users.find_by_id(booking.driver_id, refresh=True)
            if driver is not None:
                old_count = driver.total_rides or 0
                new_avg = (driver.rating * old_count + rating) / (old_count + 1)
                if not await self.users.update_rating(driver.id, new_avg, old_count + 1, old_count):
                    await self._conflict(f"Rating of driver {driver.id} changed concurrently")

        await self.db.commit()
        booking = await self._reload(booking.id)
        logger.info(f"Feedback {rating}/5 recorded for booking {booking.id}")

        await self._publish_all(
            [PendingEvent("bookingUpdated", self._payload(booking), self._booking_scope(booking))],
            [],
        )
        return booking

    async def create_emergency_alert(
        self,
        ctx: RequestContext,
        location: Optional[GeoPoint],
        message: Optional[str],
        address: Optional[str] = None,
    ) -> Booking:
        if not ctx.is_patient:
            raise AuthorizationError("Only patients can raise emergency alerts")
        message = (message or "").strip()
        if not message and location is None:
            raise ValidationError("Either a message or a location is required")

        patient = await self._get_user(ctx.user_id)
        lat = location.lat if location else None
        lng = location.lng if location else None
        if address:
            pickup_address = address
        elif location is not None:
            pickup_address = f"Emergency location ({format_lat_lng(lat, lng)})"
        else:
            pickup_address = "Location not provided"

        fare = calculate_fare(0.0, BookingPriority.CRITICAL)
        booking = Booking(
            patient_id=patient.id,
            patient_name=patient.name,
            patient_phone=patient.phone,
            pickup_address=pickup_address,
            pickup_lat=lat,
            pickup_lng=lng,
            destination_address=EMERGENCY_DESTINATION,
            destination_lat=lat,
            destination_lng=lng,
            route_distance_km=0.0,
            medical_condition=message or "Emergency alert",
            priority=BookingPriority.CRITICAL,
            is_emergency=True,
            status=BookingStatus.PENDING,
            timeline=[timeline_entry(BookingStatus.PENDING, ctx.role, "Emergency alert raised")],
            **fare,
        )
        await self.bookings.create(booking)

        recipients: List[User] = await self.users.find_by_role(UserRole.ADMIN)
        recipients += await self.users.find_by_role(UserRole.DRIVER, available=True)
        created: List[Notification] = []
        for user in recipients:
            created.append(await self.notifications.notify(
                user.id,
                "EMERGENCY_ALERT",
                kind=NotificationKind.EMERGENCY,
                booking_id=booking.id,
                patient_name=patient.name,
                pickup=pickup_address,
                message=message or "No details given",
            ))

        await self.db.commit()
        booking = await self._reload(booking.id)
        logger.warning(f"Emergency alert from patient {ctx.user_id}: booking {booking.id}")

        payload = self._payload(booking)
        alert = {
            "bookingId": str(booking.id),
            "patientId": str(patient.id),
            "patientName": patient.name,
            "patientPhone": patient.phone,
            "location": location.model_dump(mode="json", by_alias=True) if location else None,
            "address": pickup_address,
            "message": message,
            "timestamp": utcnow().isoformat(),
        }
        await self._publish_all(
            [
                PendingEvent("newBooking", payload, Scope.room(role_room(UserRole.ADMIN))),
                PendingEvent(
                    "emergencyAlert",
                    alert,
                    Scope.room(role_room(UserRole.ADMIN), role_room(UserRole.DRIVER)),
                ),
            ],
            created,
        )
        return booking

    # ── Helpers ───────────────────────────────────────────────

    async def _get_booking(self, booking_id: uuid.UUID) -> Booking:
        booking = await self.bookings.find_by_id(booking_id, refresh=True)
        if booking is None:
            raise NotFoundError("Booking not found")
        return booking

    async def _get_user(self, user_id: uuid.UUID) -> User:
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def _reload(self, booking_id: uuid.UUID) -> Booking:
        return await self.bookings.find_by_id(booking_id, refresh=True)

    async def _conflict(self, log_message: str, client_message: Optional[str] = None) -> None:
        await self.db.rollback()
        logger.warning(f"Optimistic concurrency conflict: {log_message}")
        raise ConflictError(client_message)

    def _check_status_party(self, booking: Booking, ctx: RequestContext) -> None:
        if ctx.is_admin:
            return
        if ctx.is_patient and booking.patient_id == ctx.user_id:
            return
        if ctx.is_driver and booking.driver_id == ctx.user_id:
            return
        raise AuthorizationError("Access denied")

    def _check_status_target(self, target: BookingStatus, ctx: RequestContext) -> None:
        # Runs after the transition table, so only listed pairs are filtered by role
        if ctx.is_patient and target != BookingStatus.CANCELLED:
            raise AuthorizationError("Patients can only cancel bookings")
        if ctx.is_driver and target not in DRIVER_TARGETS:
            raise AuthorizationError(f"Drivers cannot set status {target.value}")

    async def _status_notifications(
        self,
        booking: Booking,
        target: BookingStatus,
        ctx: RequestContext,
        reason: Optional[str],
    ) -> List[Notification]:
        created: List[Notification] = []
        template = STATUS_TEMPLATES.get(target)
        if template:
            created.append(await self.notifications.notify(
                booking.patient_id,
                template,
                booking_id=booking.id,
                pickup=booking.pickup_address,
                destination=booking.destination_address,
            ))
        elif target == BookingStatus.CANCELLED:
            parties = [booking.patient_id]
            if booking.driver_id is not None:
                parties.append(booking.driver_id)
            for user_id in parties:
                if user_id == ctx.user_id:
                    continue
                created.append(await self.notifications.notify(
                    user_id,
                    "BOOKING_CANCELLED",
                    booking_id=booking.id,
                    patient_name=booking.patient_name,
                    cancelled_by=ctx.role.value,
                    reason=f"Reason: {reason}" if reason else "",
                ))
        return created

    def _booking_scope(self, booking: Booking) -> Scope:
        rooms = [
            booking_room(booking.id),
            role_room(UserRole.ADMIN),
            user_room(booking.patient_id),
        ]
        if booking.driver_id is not None:
            rooms.append(user_room(booking.driver_id))
        return Scope.room(*rooms)

    @staticmethod
    def _payload(booking: Booking) -> Dict[str, Any]:
        return BookingResponse.from_booking(booking).to_event()

    async def _publish_all(self, events: List[PendingEvent], created: List[Notification]) -> None:
        """Runs after commit. Delivery is best-effort."""
        for item in events:
            await self._publish(item.event, item.payload, item.scope)
        for notif in created:
            await self._publish(
                "newNotification",
                NotificationResponse.model_validate(notif).model_dump(mode="json", by_alias=True),
                Scope.room(user_room(notif.user_id)),
            )

    async def _publish(self, event: str, payload: Dict[str, Any], scope: Scope) -> None:
        try:
            await self.broadcaster.publish(event, payload, scope)
        except Exception:
            logger.warning(f"Broadcast of {event} failed; state is committed", exc_info=True)
