"""
tests/test_analytics.py
Admin dashboard aggregates.
"""

import pytest
from httpx import AsyncClient

from services.booking.workflow import BookingWorkflow
from shared.models.models import UserRole
from shared.schemas.schemas import BookingCreateRequest
from tests.conftest import RecordingBroadcaster, auth_headers, booking_payload, ctx_for, make_user


@pytest.mark.asyncio
async def test_dashboard_empty(client: AsyncClient, admin_user):
    response = await client.get("/analytics/dashboard", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()
    assert data["totalBookings"] == 0
    assert data["totalRevenue"] == 0.0
    assert data["averageRating"] is None
    assert data["bookingsByStatus"] == {
        "pending": 0, "assigned": 0, "en_route": 0, "arrived": 0, "completed": 0, "cancelled": 0,
    }
    assert data["topDrivers"] == []


@pytest.mark.asyncio
async def test_dashboard_aggregates(
    client, db, pending_booking, patient, other_patient, driver, second_driver, admin_user
):
    workflow = BookingWorkflow(db, RecordingBroadcaster())
    admin, rider = ctx_for(admin_user), ctx_for(driver)

    # pending_booking: completed and rated 4
    await workflow.assign_driver(pending_booking.id, driver.id, admin)
    for status in ("en_route", "arrived", "completed"):
        await workflow.update_status(pending_booking.id, status, rider)
    await workflow.submit_feedback(pending_booking.id, 4, None, ctx_for(patient))

    # Second booking: low priority, cancelled
    low = await workflow.create_booking(
        ctx_for(other_patient), BookingCreateRequest.model_validate(booking_payload(priority="low"))
    )
    await workflow.update_status(low.id, "cancelled", ctx_for(other_patient))

    # Third booking: in progress with the second driver
    active = await workflow.create_booking(
        ctx_for(patient), BookingCreateRequest.model_validate(booking_payload(priority="critical"))
    )
    await workflow.assign_driver(active.id, second_driver.id, admin)

    response = await client.get("/analytics/dashboard", headers=auth_headers(admin_user))
    data = response.json()
    assert data["totalBookings"] == 3
    assert data["bookingsToday"] == 3
    assert data["completedBookings"] == 1
    assert data["activeBookings"] == 1
    assert data["bookingsByStatus"]["cancelled"] == 1
    assert data["priorityDistribution"] == {"low": 1, "medium": 0, "high": 1, "critical": 1}
    assert data["totalRevenue"] == round(pending_booking.total_fare, 2)
    assert data["averageRating"] == 4.0
    assert data["totalRatings"] == 1
    assert data["totalDrivers"] == 2
    assert data["availableDrivers"] == 1
    assert data["totalPatients"] == 2
    # The unrated second driver is not ranked
    assert [d["name"] for d in data["topDrivers"]] == ["Sunil Fernando"]
    assert data["topDrivers"][0]["totalRides"] == 1


@pytest.mark.asyncio
async def test_top_drivers_rank_rated_drivers_only(client, db, admin_user):
    await make_user(db, UserRole.DRIVER, "new@example.com", "New Driver")
    await make_user(db, UserRole.DRIVER, "steady@example.com", "Steady Driver", rating=4.8, total_rides=40)
    await make_user(db, UserRole.DRIVER, "once@example.com", "One Ride", rating=5.0, total_rides=1)
    await make_user(db, UserRole.DRIVER, "busy@example.com", "Busy Driver", rating=4.8, total_rides=90)

    response = await client.get("/analytics/dashboard", headers=auth_headers(admin_user))
    top = response.json()["topDrivers"]
    assert [d["name"] for d in top] == ["One Ride", "Busy Driver", "Steady Driver"]
    assert response.json()["totalDrivers"] == 4


@pytest.mark.asyncio
async def test_dashboard_admin_only(client, patient, driver):
    for user in (patient, driver):
        response = await client.get("/analytics/dashboard", headers=auth_headers(user))
        assert response.status_code == 403
