from __future__ import annotations

from datetime import date, time, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import ItemKind, Rental
from services.catalog_service import COMMITTED_STATUSES, get_item_row, not_archived
from services.rental_service import item_name_map, serialize_rental


STATUS_COLORS = {
    "active": "#2196F3",
    "reserved": "#9C27B0",
    "overdue": "#ff5722",
    "cancelled": "#f44336",
    "returned": "#4caf50",
}
DEFAULT_STATUS_COLOR = "#666"

AVAILABLE_COLOR = "#4caf50"
PARTIAL_COLOR = "#ff9800"
BOOKED_COLOR = "#f44336"


def status_color(status: str | None) -> str:
    return STATUS_COLORS.get(status or "", DEFAULT_STATUS_COLOR)


def format_time(value: time | None) -> str:
    if value is None:
        return ""
    hour12 = value.hour % 12 or 12
    suffix = "PM" if value.hour >= 12 else "AM"
    return f"{hour12}:{value.minute:02d}{suffix}"


def calendar_events(db: Session) -> list[dict]:
    rows = db.execute(
        select(Rental).where(not_archived(Rental.archived)).order_by(Rental.rent_date, Rental.id)
    ).scalars().all()
    names = item_name_map(db, rows)
    events = []
    for rental in rows:
        color = status_color(rental.status)
        event: dict[str, Any] = {
            "id": rental.id,
            "backgroundColor": color,
            "borderColor": color,
            "extendedProps": {"rentalData": serialize_rental(rental, names)},
        }
        if rental.rent_time and rental.return_time:
            event["title"] = f"{format_time(rental.rent_time)}-{format_time(rental.return_time)} {rental.renter_name}"
            end_date = rental.return_date or rental.rent_date
            event["start"] = f"{rental.rent_date.isoformat()}T{rental.rent_time.strftime('%H:%M:%S')}"
            event["end"] = f"{end_date.isoformat()}T{rental.return_time.strftime('%H:%M:%S')}"
            event["allDay"] = False
        else:
            event["title"] = rental.renter_name
            event["start"] = rental.rent_date.isoformat() if rental.rent_date else None
            event["end"] = rental.return_date.isoformat() if rental.return_date else None
            event["allDay"] = True
        events.append(event)
    return events


def item_availability_events(
    db: Session,
    kind: ItemKind,
    item_id: Any,
    days: int = 90,
    today: date | None = None,
) -> list[dict] | None:
    """Per-day booked/available view of one item, starting today.

    Unlike the range check this counts demand day by day.
    """
    item = get_item_row(db, kind, item_id)
    if item is None:
        return None
    start = today or date.today()
    window_end = start + timedelta(days=max(days, 1) - 1)
    total = int(item.quantity_total or 0)
    rentals = db.execute(
        select(Rental)
        .where(Rental.item_kind == kind.value)
        .where(Rental.item_id == str(item.id))
        .where(Rental.status.in_(COMMITTED_STATUSES))
        .where(not_archived(Rental.archived))
        .where(Rental.rent_date <= window_end)
    ).scalars().all()

    booked_by_day: dict[date, int] = {}
    renters_by_day: dict[date, list[dict]] = {}
    for rental in rentals:
        last_day = rental.return_date or rental.rent_date
        day = max(rental.rent_date, start)
        while day <= min(last_day, window_end):
            booked_by_day[day] = booked_by_day.get(day, 0) + int(rental.quantity or 0)
            renters_by_day.setdefault(day, []).append(
                {"rentalID": rental.id, "renterName": rental.renter_name, "quantity": rental.quantity}
            )
            day += timedelta(days=1)

    events = []
    for offset in range(max(days, 1)):
        day = start + timedelta(days=offset)
        booked = booked_by_day.get(day, 0)
        available = total - booked
        if total > 0 and available >= total:
            color, label = AVAILABLE_COLOR, "Available"
        elif total > 0 and available > 0:
            color, label = PARTIAL_COLOR, "Partially Booked"
        else:
            color, label = BOOKED_COLOR, "Fully Booked"
        events.append(
            {
                "title": f"{item.name}: {available}/{total} available",
                "start": day.isoformat(),
                "end": day.isoformat(),
                "allDay": True,
                "backgroundColor": color,
                "borderColor": color,
                "extendedProps": {
                    "availabilityData": {
                        "item": item.name,
                        "available": available,
                        "total": total,
                        "booked": booked,
                        "status": label,
                        "rentals": renters_by_day.get(day, []),
                    }
                },
            }
        )
    return events
