"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the API.
Wire format is camelCase (driverId, totalFare, ...); snake_case is accepted on input too.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from shared.models.models import (
    BookingPriority,
    BookingStatus,
    HospitalType,
    NotificationKind,
    PaymentStatus,
    UserRole,
)
from shared.utils.geo import parse_lat_lng


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        use_enum_values=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class MessageResponse(BaseSchema):
    message: str


# ── Location ──────────────────────────────────────────────────

class GeoPoint(BaseSchema):
    """
    A WGS84 point. Accepts {"lat", "lng", "timestamp"?} or the legacy "lat,lng" string.
    """
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def parse_string_form(cls, value: Any) -> Any:
        if isinstance(value, str):
            lat, lng = parse_lat_lng(value)
            return {"lat": lat, "lng": lng}
        return value


# ── Auth / Users ──────────────────────────────────────────────

class RegisterRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    phone: str = Field(..., min_length=5, max_length=30)
    password: str = Field(..., min_length=6, max_length=128)
    role: str = Field(default="patient", pattern="^(patient|driver)$")


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UserResponse(BaseSchema):
    id: uuid.UUID
    name: str
    email: EmailStr
    phone: str
    role: UserRole
    verified: bool
    created_at: datetime
    # Driver-only
    available: Optional[bool] = None
    location: Optional[GeoPoint] = None
    rating: Optional[float] = None
    total_rides: Optional[int] = None


class AuthResponse(BaseSchema):
    message: str
    token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: UserResponse


# ── Drivers ───────────────────────────────────────────────────

class DriverResponse(BaseSchema):
    id: uuid.UUID
    name: str
    email: EmailStr
    phone: str
    available: bool = False
    location: Optional[GeoPoint] = None
    rating: float
    total_rides: int


class DriverLocationUpdate(BaseSchema):
    location: GeoPoint


class DriverLocationResponse(BaseSchema):
    message: str
    applied: bool
    location: Optional[GeoPoint] = None


class DriverAvailabilityUpdate(BaseSchema):
    available: bool


# ── Booking ───────────────────────────────────────────────────

class MedicalFlags(BaseSchema):
    wheelchair: bool = False
    oxygen: bool = False
    stretcher: bool = False
    special_instructions: Optional[str] = Field(None, max_length=1000)


class RouteInfo(BaseSchema):
    distance: float = Field(..., ge=0, description="Route distance in km")


class BookingCreateRequest(BaseSchema):
    pickup_address: str = Field(..., min_length=1, max_length=500)
    pickup_location: Optional[GeoPoint] = None
    destination_address: str = Field(..., min_length=1, max_length=500)
    destination_location: Optional[GeoPoint] = None
    medical_condition: str = Field(..., min_length=1, max_length=2000)
    priority: str = Field(default="medium", pattern="^(low|medium|high|critical)$")
    medical_flags: Optional[MedicalFlags] = None
    patient_name: Optional[str] = Field(None, max_length=255)
    patient_phone: Optional[str] = Field(None, max_length=30)
    emergency_contact: Optional[str] = Field(None, max_length=255)
    emergency_contact_phone: Optional[str] = Field(None, max_length=30)
    route: Optional[RouteInfo] = None

    @field_validator("pickup_address", "destination_address", "medical_condition")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v.strip()


class BookingStatusUpdate(BaseSchema):
    status: str
    reason: Optional[str] = Field(None, max_length=500)


class BookingAssignRequest(BaseSchema):
    driver_id: uuid.UUID


class FeedbackRequest(BaseSchema):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class PlaceResponse(BaseSchema):
    address: str
    location: Optional[GeoPoint] = None


class FareResponse(BaseSchema):
    base_fare: float
    distance_fare: float
    priority_multiplier: float
    total_fare: float


class FeedbackResponse(BaseSchema):
    rating: int
    comment: Optional[str] = None
    submitted_at: Optional[datetime] = None


class TimelineEntry(BaseSchema):
    status: str
    timestamp: datetime
    actor_role: Optional[str] = None
    note: Optional[str] = None


class DriverSummary(BaseSchema):
    id: uuid.UUID
    name: str
    phone: str
    email: EmailStr
    location: Optional[GeoPoint] = None


def _point(lat: Optional[float], lng: Optional[float]) -> Optional[GeoPoint]:
    if lat is None or lng is None:
        return None
    return GeoPoint(lat=lat, lng=lng)


class BookingResponse(BaseSchema):
    id: uuid.UUID
    patient_id: uuid.UUID
    patient_name: str
    patient_phone: str
    driver_id: Optional[uuid.UUID] = None
    driver: Optional[DriverSummary] = None
    pickup: PlaceResponse
    destination: PlaceResponse
    route_distance_km: Optional[float] = None
    medical_condition: str
    priority: BookingPriority
    medical_flags: Optional[MedicalFlags] = None
    emergency_contact: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    is_emergency: bool
    status: BookingStatus
    fare: FareResponse
    payment_status: PaymentStatus
    feedback: Optional[FeedbackResponse] = None
    timeline: List[TimelineEntry]
    estimated_arrival: Optional[datetime] = None
    actual_arrival: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_booking(cls, booking) -> "BookingResponse":
        """Build the nested wire shape from a flat Booking row."""
        feedback = None
        if booking.feedback_rating is not None:
            feedback = FeedbackResponse(
                rating=booking.feedback_rating,
                comment=booking.feedback_comment,
                submitted_at=booking.feedback_at,
            )
        driver = None
        if booking.driver_id is not None and booking.driver is not None:
            driver = DriverSummary.model_validate(booking.driver)
        return cls(
            id=booking.id,
            patient_id=booking.patient_id,
            patient_name=booking.patient_name,
            patient_phone=booking.patient_phone,
            driver_id=booking.driver_id,
            driver=driver,
            pickup=PlaceResponse(
                address=booking.pickup_address,
                location=_point(booking.pickup_lat, booking.pickup_lng),
            ),
            destination=PlaceResponse(
                address=booking.destination_address,
                location=_point(booking.destination_lat, booking.destination_lng),
            ),
            route_distance_km=booking.route_distance_km,
            medical_condition=booking.medical_condition,
            priority=booking.priority,
            medical_flags=booking.medical_flags,
            emergency_contact=booking.emergency_contact,
            emergency_contact_phone=booking.emergency_contact_phone,
            is_emergency=booking.is_emergency,
            status=booking.status,
            fare=FareResponse(
                base_fare=booking.base_fare,
                distance_fare=booking.distance_fare,
                priority_multiplier=booking.priority_multiplier,
                total_fare=booking.total_fare,
            ),
            payment_status=booking.payment_status,
            feedback=feedback,
            timeline=booking.timeline or [],
            estimated_arrival=booking.estimated_arrival,
            actual_arrival=booking.actual_arrival,
            completed_at=booking.completed_at,
            cancelled_at=booking.cancelled_at,
            cancellation_reason=booking.cancellation_reason,
            cancelled_by=booking.cancelled_by,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )

    def to_event(self) -> Dict[str, Any]:
        """JSON-safe camelCase payload for real-time frames."""
        return self.model_dump(mode="json", by_alias=True)


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    kind: NotificationKind
    title: str
    message: str
    link: Optional[str] = None
    booking_id: Optional[uuid.UUID] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime


class UnreadCountResponse(BaseSchema):
    count: int


class MarkAllReadResponse(BaseSchema):
    message: str
    updated: int


# ── Hospital ──────────────────────────────────────────────────

class HospitalCreateRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=255)
    address: str = Field(..., min_length=2)
    location: GeoPoint
    phone: Optional[str] = Field(None, max_length=30)
    type: str = Field(default="public", pattern="^(public|private)$")
    services: List[str] = Field(default_factory=list)


class HospitalResponse(BaseSchema):
    id: uuid.UUID
    name: str
    address: str
    location: GeoPoint
    phone: Optional[str] = None
    type: HospitalType
    services: List[str]
    distance_km: Optional[float] = None


# ── Emergency ─────────────────────────────────────────────────

class EmergencyAlertRequest(BaseSchema):
    location: Optional[GeoPoint] = None
    message: Optional[str] = Field(None, max_length=2000)
    address: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def require_message_or_location(self) -> "EmergencyAlertRequest":
        if not (self.message and self.message.strip()) and self.location is None:
            raise ValueError("Either a message or a location is required")
        return self


# ── Analytics ─────────────────────────────────────────────────

class TopDriver(BaseSchema):
    id: uuid.UUID
    name: str
    rating: float
    total_rides: int


class DashboardResponse(BaseSchema):
    total_bookings: int
    bookings_today: int
    bookings_by_status: Dict[str, int]
    priority_distribution: Dict[str, int]
    completed_bookings: int
    active_bookings: int
    total_revenue: float
    average_rating: Optional[float]
    total_ratings: int
    total_drivers: int
    available_drivers: int
    total_patients: int
    top_drivers: List[TopDriver]


# ── Realtime ──────────────────────────────────────────────────

class RealtimeStatsResponse(BaseSchema):
    connections: int
    users: int
    rooms: Dict[str, int]
