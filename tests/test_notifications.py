"""
tests/test_notifications.py
Notification sink templates plus the list / unread-count / mark-read endpoints.
"""

import uuid

import pytest
from httpx import AsyncClient

from services.notification.sink import TEMPLATES, NotificationSink, render
from shared.models.models import NotificationKind, User
from shared.utils.exceptions import AuthorizationError
from tests.conftest import auth_headers


async def assign(client: AsyncClient, booking_id, driver: User, admin: User):
    return await client.patch(
        f"/bookings/{booking_id}/assign",
        headers=auth_headers(admin),
        json={"driverId": str(driver.id)},
    )


# ── Templates ─────────────────────────────────────────────────

def test_render_fills_placeholders():
    title, message = render(
        "BOOKING_ASSIGNED_PATIENT", driver_name="Sunil Fernando", eta="10:45 UTC"
    )
    assert title == "Ambulance Assigned"
    assert message == "Sunil Fernando has been assigned to your booking. Estimated arrival: 10:45 UTC."


def test_render_cancelled_without_reason_is_trimmed():
    _, message = render(
        "BOOKING_CANCELLED", patient_name="Nimal Perera", cancelled_by="admin", reason=""
    )
    assert message.endswith("cancelled by the admin.")


def test_every_template_has_title_and_message():
    for key, template in TEMPLATES.items():
        assert template["title"], key
        assert template["message"], key


# ── Sink ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_notify_sets_link_for_booking(db, patient):
    booking_id = uuid.uuid4()
    sink = NotificationSink(db)
    notif = await sink.notify(
        patient.id, "BOOKING_ARRIVED", booking_id=booking_id, pickup="Temple Street"
    )
    await db.commit()
    assert notif.link == f"/bookings/{booking_id}"
    assert notif.kind == NotificationKind.BOOKING
    assert notif.is_read is False
    assert await sink.unread_count(patient.id) == 1


@pytest.mark.asyncio
async def test_mark_read_other_user_denied(db, patient, other_patient):
    sink = NotificationSink(db)
    notif = await sink.create(patient.id, NotificationKind.SYSTEM, "Welcome", "Hello")
    await db.commit()
    with pytest.raises(AuthorizationError):
        await sink.mark_read(notif.id, other_patient.id)


# ── Endpoints ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_notified_of_new_booking(client, pending_booking, admin_user):
    response = await client.get("/notifications", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()
    assert len(data) == 1
    assert data[0]["title"] == "New Booking Request"
    assert data[0]["bookingId"] == str(pending_booking.id)
    assert data[0]["link"] == f"/bookings/{pending_booking.id}"
    assert data[0]["isRead"] is False
    assert "Nimal Perera" in data[0]["message"]


@pytest.mark.asyncio
async def test_assignment_notifies_patient_and_driver(client, pending_booking, patient, driver, admin_user):
    await assign(client, pending_booking.id, driver, admin_user)

    patient_notes = (await client.get("/notifications", headers=auth_headers(patient))).json()
    assert [n["title"] for n in patient_notes] == ["Ambulance Assigned"]
    assert "Sunil Fernando" in patient_notes[0]["message"]

    driver_notes = (await client.get("/notifications", headers=auth_headers(driver))).json()
    assert [n["title"] for n in driver_notes] == ["New Assignment"]


@pytest.mark.asyncio
async def test_status_changes_notify_patient_newest_first(client, pending_booking, patient, driver, admin_user):
    await assign(client, pending_booking.id, driver, admin_user)
    for status in ("en_route", "arrived"):
        await client.patch(
            f"/bookings/{pending_booking.id}/status",
            headers=auth_headers(driver),
            json={"status": status},
        )

    notes = (await client.get("/notifications", headers=auth_headers(patient))).json()
    assert [n["title"] for n in notes] == [
        "Ambulance Arrived",
        "Ambulance En Route",
        "Ambulance Assigned",
    ]

    limited = await client.get("/notifications", headers=auth_headers(patient), params={"limit": 1})
    assert len(limited.json()) == 1


@pytest.mark.asyncio
async def test_unread_count_and_mark_read(client, pending_booking, admin_user):
    headers = auth_headers(admin_user)
    assert (await client.get("/notifications/unread-count", headers=headers)).json() == {"count": 1}

    notif_id = (await client.get("/notifications", headers=headers)).json()[0]["id"]
    response = await client.patch(f"/notifications/{notif_id}/read", headers=headers)
    assert response.status_code == 200
    assert response.json()["isRead"] is True
    assert response.json()["readAt"] is not None

    assert (await client.get("/notifications/unread-count", headers=headers)).json() == {"count": 0}
    unread = await client.get("/notifications", headers=headers, params={"unreadOnly": "true"})
    assert unread.json() == []


@pytest.mark.asyncio
async def test_mark_read_foreign_notification(client, pending_booking, admin_user, patient):
    notif_id = (await client.get("/notifications", headers=auth_headers(admin_user))).json()[0]["id"]
    response = await client.patch(f"/notifications/{notif_id}/read", headers=auth_headers(patient))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_mark_read_missing(client, patient):
    response = await client.patch(f"/notifications/{uuid.uuid4()}/read", headers=auth_headers(patient))
    assert response.status_code == 404
    assert response.json() == {"message": "Notification not found"}


@pytest.mark.asyncio
async def test_mark_all_read(client, pending_booking, patient, driver, admin_user):
    await assign(client, pending_booking.id, driver, admin_user)
    await client.patch(
        f"/bookings/{pending_booking.id}/status",
        headers=auth_headers(driver),
        json={"status": "en_route"},
    )
    headers = auth_headers(patient)
    response = await client.patch("/notifications/read-all", headers=headers)
    assert response.status_code == 200
    assert response.json()["updated"] == 2
    assert (await client.get("/notifications/unread-count", headers=headers)).json() == {"count": 0}

    again = await client.patch("/notifications/read-all", headers=headers)
    assert again.json()["updated"] == 0


@pytest.mark.asyncio
async def test_notifications_require_auth(client):
    response = await client.get("/notifications")
    assert response.status_code == 401
