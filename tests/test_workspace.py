"""
Appointment booking and the admin schedule / agenda.
"""

from datetime import date, datetime

import pytest

from storefront import documents, workspace
from storefront.workspace import BookingError, book_appointment

pytestmark = [pytest.mark.api]

DAY = "2099-01-15"

SERVICE = {
    "id": "svc-cut",
    "name": "Haircut",
    "type": "service",
    "requiresAppointment": True,
    "duration": 45,
    "price": 30,
}


def booking(**overrides):
    b = {
        "serviceId": "svc-cut",
        "date": DAY,
        "startTime": "10:00",
        "customerName": "Ana Silva",
        "customerEmail": "ana@example.com",
    }
    b.update(overrides)
    return b


@pytest.mark.unit
class TestHelpers:
    def test_overlaps_is_half_open(self):
        a = datetime(2099, 1, 1, 10, 0), datetime(2099, 1, 1, 11, 0)
        assert workspace.overlaps(*a, datetime(2099, 1, 1, 10, 30), datetime(2099, 1, 1, 11, 30))
        assert not workspace.overlaps(*a, datetime(2099, 1, 1, 11, 0), datetime(2099, 1, 1, 12, 0))

    def test_schedule_summary(self):
        items = [
            {"date": "2024-05-02", "startTime": "09:00", "type": "meeting"},
            {"date": "2024-05-01", "startTime": "15:00", "type": "review"},
            {"date": "2024-05-01", "startTime": "08:00", "type": "meeting"},
        ]
        out = workspace.schedule_summary(items, today=date(2024, 5, 1))
        assert list(out["byDate"]) == ["2024-05-01", "2024-05-02"]
        assert [i["startTime"] for i in out["today"]] == ["08:00", "15:00"]
        assert out["meetingCount"] == 2
        assert out["totalEvents"] == 3

    def test_default_event_is_tomorrow(self):
        assert workspace.default_event(date(2024, 12, 31))["date"] == "2025-01-01"


class TestBooking:
    async def test_books_appointment_order_and_calendars(self, session):
        await documents.create(session, SERVICE, "catalog")
        result = await book_appointment(session, booking())
        apt, order = result["appointment"], result["order"]
        assert apt["endTime"] == "10:45"
        assert apt["status"] == "scheduled"
        assert order["total"] == 30
        assert order["paymentMethod"] == "appointment"
        assert order["customer"] == {
            "firstName": "Ana", "lastName": "Silva", "email": "ana@example.com", "phone": "",
        }
        assert await documents.read(session, f"apt_{apt['id']}", workspace.AGENDA)
        assert await documents.read(session, f"apt_{apt['id']}", workspace.SCHEDULE)

    async def test_conflicts(self, session):
        await documents.create(session, SERVICE, "catalog")
        await book_appointment(session, booking())
        with pytest.raises(BookingError) as exc:
            await book_appointment(session, booking(startTime="10:30"))
        assert exc.value.status_code == 409
        # back-to-back is fine
        await book_appointment(session, booking(startTime="10:45"))

    async def test_cancelled_slot_is_free_again(self, session):
        await documents.create(session, SERVICE, "catalog")
        first = await book_appointment(session, booking())
        apt = first["appointment"]
        await documents.update(session, apt["id"], {**apt, "status": "cancelled"}, workspace.APPOINTMENTS)
        await book_appointment(session, booking())

    async def test_rejections(self, session):
        await documents.create(session, SERVICE, "catalog")
        await documents.create(session, {"id": "mug", "type": "product"}, "catalog")
        await documents.create(session, {**SERVICE, "id": "svc-walkin", "requiresAppointment": False}, "catalog")
        cases = [
            (booking(customerName=""), 400),
            (booking(serviceId="mug"), 404),
            (booking(serviceId="svc-walkin"), 400),
            (booking(startTime="25:99"), 400),
            (booking(date="2000-01-01"), 400),
        ]
        for data, status in cases:
            with pytest.raises(BookingError) as exc:
                await book_appointment(session, data)
            assert exc.value.status_code == status

    async def test_late_slot_must_end_same_day(self, session):
        await documents.create(session, {**SERVICE, "duration": 60}, "catalog")
        with pytest.raises(BookingError) as exc:
            await book_appointment(session, booking(startTime="23:30"))
        assert exc.value.status_code == 400
        assert await documents.read_all(session, workspace.APPOINTMENTS) == []

        assert (await book_appointment(session, booking(startTime="22:30")))["appointment"]["endTime"] == "23:30"
        with pytest.raises(BookingError) as exc:
            await book_appointment(session, booking(startTime="23:15"))
        assert exc.value.status_code == 400

    async def test_conflict_uses_stored_duration(self, session):
        await documents.create(session, SERVICE, "catalog")
        await documents.create(session, {
            "id": "legacy", "date": DAY, "startTime": "09:30", "endTime": "00:30", "duration": 60, "status": "scheduled",
        }, workspace.APPOINTMENTS)
        with pytest.raises(BookingError) as exc:
            await book_appointment(session, booking())
        assert exc.value.status_code == 409


class TestRoutes:
    async def test_public_booking_and_admin_status(self, client, session, admin_headers):
        await documents.create(session, SERVICE, "catalog")
        r = await client.post("/api/query/public/book-appointment", json=booking())
        assert r.status_code == 201
        data = r.json()["data"]
        apt_id = data["appointment"]["id"]
        assert data["orderId"].startswith("ORD-")

        r = await client.post("/api/query/public/book-appointment", json=booking())
        assert r.status_code == 409

        r = await client.get("/api/admin/appointments", headers=admin_headers)
        assert [a["id"] for a in r.json()["data"]] == [apt_id]

        r = await client.put(f"/api/admin/appointments/{apt_id}/status", json={"status": "later"}, headers=admin_headers)
        assert r.status_code == 400
        r = await client.put(f"/api/admin/appointments/{apt_id}/status", json={"status": "confirmed"}, headers=admin_headers)
        assert r.json()["data"]["status"] == "confirmed"

        agenda = (await client.get("/api/admin/workspace/agenda", headers=admin_headers)).json()["data"]
        assert agenda[0]["status"] == "confirmed"

    async def test_schedule_crud(self, client, admin_headers):
        r = await client.post("/api/admin/workspace/schedule", json={
            "title": "Stock review", "type": "review", "date": "2024-05-01", "startTime": "09:00", "endTime": "10:00",
        }, headers=admin_headers)
        assert r.status_code == 201
        event = r.json()["data"]
        assert event["location"] == "TBD"

        r = await client.put(f"/api/admin/workspace/schedule/{event['id']}", json={"endTime": "08:00"}, headers=admin_headers)
        assert r.status_code == 400
        r = await client.put(f"/api/admin/workspace/schedule/{event['id']}", json={"type": "party"}, headers=admin_headers)
        assert r.status_code == 400

        r = await client.get("/api/admin/workspace/schedule", headers=admin_headers)
        body = r.json()
        assert body["totalEvents"] == 1
        assert list(body["byDate"]) == ["2024-05-01"]

        r = await client.delete(f"/api/admin/workspace/schedule/{event['id']}", headers=admin_headers)
        assert r.status_code == 200
        r = await client.delete(f"/api/admin/workspace/schedule/{event['id']}", headers=admin_headers)
        assert r.status_code == 404
