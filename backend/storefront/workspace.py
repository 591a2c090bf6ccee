import uuid
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import documents
from .auth_routes import require_admin
from .db import get_session
from .log import log_event
from .models import User
from .pricing import as_number

router = APIRouter()

SCHEDULE = "schedule_items"
AGENDA = "agenda_items"
APPOINTMENTS = "appointments"
CATALOG = "catalog"
ORDERS = "orders"

EVENT_TYPES = ("meeting", "review", "presentation", "standup", "appointment")
APPOINTMENT_STATUSES = ("scheduled", "confirmed", "completed", "cancelled", "no_show")


class BookingError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


def default_event(today: Optional[date] = None) -> Dict[str, Any]:
    tomorrow = (today or date.today()) + timedelta(days=1)
    return {
        "title": "New Event",
        "type": "meeting",
        "startTime": "12:00",
        "endTime": "13:00",
        "date": tomorrow.isoformat(),
        "location": "TBD",
        "attendees": ["Organizer"],
        "description": "",
    }


def group_by_date(items: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for item in sorted(items, key=lambda i: (str(i.get("date") or ""), str(i.get("startTime") or ""))):
        grouped.setdefault(str(item.get("date") or ""), []).append(item)
    return grouped


def schedule_summary(items: List[Dict[str, Any]], today: Optional[date] = None) -> Dict[str, Any]:
    day = (today or date.today()).isoformat()
    todays = [i for i in items if i.get("date") == day]
    return {
        "byDate": group_by_date(items),
        "today": sorted(todays, key=lambda i: str(i.get("startTime") or "")),
        "totalEvents": len(items),
        "meetingCount": sum(1 for i in items if i.get("type") == "meeting"),
    }


def _at(day: str, hhmm: str) -> datetime:
    return datetime.strptime(f"{day} {hhmm}", "%Y-%m-%d %H:%M")


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and end_a > start_b


async def book_appointment(db: AsyncSession, booking: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Create an appointment and its order for a bookable catalog service."""
    for field in ("serviceId", "date", "startTime", "customerName", "customerEmail"):
        if not str(booking.get(field) or "").strip():
            raise BookingError(400, f"{field} is required")

    service = await documents.read(db, booking["serviceId"], CATALOG)
    if not service or service.get("type") != "service":
        raise BookingError(404, "Service not found")
    if not service.get("requiresAppointment"):
        raise BookingError(400, "This service does not require an appointment")

    try:
        start = _at(booking["date"], booking["startTime"])
    except ValueError:
        raise BookingError(400, "date must be YYYY-MM-DD and startTime HH:MM")
    if start <= (now or datetime.now()):
        raise BookingError(400, "Appointment must be scheduled for a future date and time")

    duration = int(as_number(service.get("duration")) or 60)
    end = start + timedelta(minutes=duration)
    if end.date() != start.date():
        raise BookingError(400, "Appointment must end on the same day")
    end_time = end.strftime("%H:%M")

    for apt in await documents.read_all(db, APPOINTMENTS):
        if apt.get("date") != booking["date"] or apt.get("status") == "cancelled":
            continue
        try:
            other_start = _at(apt["date"], apt["startTime"])
            if apt.get("duration"):
                other_end = other_start + timedelta(minutes=int(as_number(apt["duration"]) or 0))
            else:
                other_end = _at(apt["date"], apt["endTime"])
        except (KeyError, TypeError, ValueError):
            continue
        if overlaps(start, end, other_start, other_end):
            raise BookingError(409, "Time slot conflicts with existing appointment")

    now_iso = documents.now_iso()
    appointment_id = uuid.uuid4().hex
    order_id = f"ORD-{documents.now_ms()}-{appointment_id[:6].upper()}"
    price = as_number(service.get("price")) or 0
    name = booking["customerName"].strip()
    appointment = {
        "id": appointment_id,
        "serviceId": service["id"],
        "serviceName": service.get("name"),
        "date": booking["date"],
        "startTime": booking["startTime"],
        "endTime": end_time,
        "duration": duration,
        "customerName": name,
        "customerEmail": booking["customerEmail"],
        "customerPhone": booking.get("customerPhone") or "",
        "notes": booking.get("notes") or "",
        "price": price,
        "status": "scheduled",
        "paymentStatus": "pending",
        "orderId": order_id,
        "createdAt": now_iso,
        "updatedAt": now_iso,
    }
    first, _, last = name.partition(" ")
    order = {
        "id": order_id,
        "uid": order_id,
        "customer": {"firstName": first, "lastName": last, "email": booking["customerEmail"], "phone": appointment["customerPhone"]},
        "cst_email": booking["customerEmail"],
        "cst_name": name,
        "items": [{
            "id": service["id"],
            "name": service.get("name"),
            "price": price,
            "quantity": 1,
            "type": "service",
            "appointmentId": appointment_id,
            "appointmentDate": booking["date"],
            "appointmentTime": booking["startTime"],
        }],
        "subtotal": price,
        "shippingCost": 0,
        "discountAmount": 0,
        "total": price,
        "amount": price,
        "status": "scheduled",
        "paymentStatus": "pending",
        "paymentMethod": "appointment",
        "appointmentId": appointment_id,
        "isServiceAppointment": True,
        "createdAt": now_iso,
        "updatedAt": now_iso,
    }
    await documents.create(db, appointment, APPOINTMENTS)
    await documents.create(db, order, ORDERS)
    await _sync_calendars(db, appointment)
    log_event("appointments", action="booked", appointment_id=appointment_id, order_id=order_id, date=booking["date"])
    return {"appointment": appointment, "order": order}


async def _sync_calendars(db: AsyncSession, apt: Dict[str, Any]) -> None:
    agenda_item = {
        "id": f"apt_{apt['id']}",
        "title": f"{apt['serviceName']} - {apt['customerName']}",
        "time": apt["startTime"],
        "duration": f"{apt['duration']} minutes",
        "attendees": 1,
        "type": "appointment",
        "date": apt["date"],
        "appointmentId": apt["id"],
        "customerEmail": apt["customerEmail"],
        "customerPhone": apt["customerPhone"],
        "price": apt["price"],
        "status": apt["status"],
        "createdAt": documents.now_iso(),
    }
    schedule_item = {
        "id": f"apt_{apt['id']}",
        "title": apt["serviceName"],
        "type": "appointment",
        "startTime": apt["startTime"],
        "endTime": apt["endTime"],
        "date": apt["date"],
        "location": "Office",
        "attendees": [apt["customerName"]],
        "description": f"Service appointment with {apt['customerName']} ({apt['customerEmail']})",
        "appointmentId": apt["id"],
        "status": apt["status"],
        "createdAt": documents.now_iso(),
    }
    for collection, item in ((AGENDA, agenda_item), (SCHEDULE, schedule_item)):
        try:
            await documents.create(db, item, collection)
        except (SQLAlchemyError, documents.DocumentExists) as e:
            await db.rollback()
            log_event("appointments", action="calendar_sync_failed", collection=collection, appointment_id=apt["id"], error=str(e))


# ---------- routes ----------

class BookingBody(BaseModel):
    serviceId: Optional[str] = None
    date: Optional[str] = None
    startTime: Optional[str] = None
    customerName: Optional[str] = None
    customerEmail: Optional[EmailStr] = None
    customerPhone: Optional[str] = None
    notes: Optional[str] = None


@router.post("/api/query/public/book-appointment", status_code=201)
async def book(body: BookingBody, db: AsyncSession = Depends(get_session)):
    try:
        result = await book_appointment(db, body.model_dump())
    except BookingError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {
        "success": True,
        "message": "Appointment booked successfully",
        "data": {"appointment": result["appointment"], "orderId": result["order"]["id"]},
    }


@router.get("/api/admin/appointments")
async def list_appointments(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    items = await documents.read_all(db, APPOINTMENTS)
    items.sort(key=lambda a: (str(a.get("date") or ""), str(a.get("startTime") or "")))
    return {"success": True, "data": items}


class AppointmentStatusBody(BaseModel):
    status: str


@router.put("/api/admin/appointments/{appointment_id}/status")
async def set_appointment_status(appointment_id: str, body: AppointmentStatusBody, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    if body.status not in APPOINTMENT_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(APPOINTMENT_STATUSES)}")
    apt = await documents.read(db, appointment_id, APPOINTMENTS)
    if not apt:
        raise HTTPException(status_code=404, detail="Appointment not found")
    apt = {**apt, "status": body.status, "updatedAt": documents.now_iso()}
    await documents.update(db, appointment_id, apt, APPOINTMENTS)
    for collection in (AGENDA, SCHEDULE):
        linked = await documents.read(db, f"apt_{appointment_id}", collection)
        if linked:
            await documents.update(db, linked["id"], {**linked, "status": body.status}, collection)
    return {"success": True, "data": apt}


@router.get("/api/admin/workspace/schedule")
async def get_schedule(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    items = await documents.read_all(db, SCHEDULE)
    return {"success": True, "data": items, **schedule_summary(items)}


class ScheduleItemBody(BaseModel):
    title: Optional[str] = None
    type: Optional[str] = None
    date: Optional[str] = None
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    location: Optional[str] = None
    attendees: Optional[List[str]] = None
    description: Optional[str] = None


def _check_event(event: Dict[str, Any]) -> None:
    if event.get("type") not in EVENT_TYPES:
        raise HTTPException(status_code=400, detail=f"type must be one of {', '.join(EVENT_TYPES)}")
    try:
        start, end = _at(event["date"], event["startTime"]), _at(event["date"], event["endTime"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD and times HH:MM")
    if end <= start:
        raise HTTPException(status_code=400, detail="endTime must be after startTime")


@router.post("/api/admin/workspace/schedule", status_code=201)
async def create_event(body: ScheduleItemBody, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    event = {**default_event(), **body.model_dump(exclude_none=True), "createdAt": documents.now_iso()}
    _check_event(event)
    return {"success": True, "data": await documents.create(db, event, SCHEDULE)}


@router.put("/api/admin/workspace/schedule/{item_id}")
async def update_event(item_id: str, body: ScheduleItemBody, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    existing = await documents.read(db, item_id, SCHEDULE)
    if not existing:
        raise HTTPException(status_code=404, detail="Event not found")
    event = {**existing, **body.model_dump(exclude_none=True), "updatedAt": documents.now_iso()}
    _check_event(event)
    return {"success": True, "data": await documents.update(db, item_id, event, SCHEDULE)}


@router.delete("/api/admin/workspace/schedule/{item_id}")
async def delete_event(item_id: str, db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    if not await documents.delete(db, item_id, SCHEDULE):
        raise HTTPException(status_code=404, detail="Event not found")
    return {"success": True}


@router.get("/api/admin/workspace/agenda")
async def get_agenda(db: AsyncSession = Depends(get_session), _: User = Depends(require_admin)):
    items = await documents.read_all(db, AGENDA)
    items.sort(key=lambda a: (str(a.get("date") or ""), str(a.get("time") or "")))
    return {"success": True, "data": items}
