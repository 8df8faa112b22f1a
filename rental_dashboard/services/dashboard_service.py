from __future__ import annotations

from datetime import date, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.rental_models import Decoration, InventoryItem, Rental
from services.catalog_service import not_archived
from services.grouping_service import group_key
from services.pricing_service import round_money


LOW_STOCK_THRESHOLD = 5
DUE_SOON_DAYS = 3
MONTH_LABELS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def _last_months(today: date, count: int) -> list[tuple[int, int]]:
    months = []
    year, month = today.year, today.month
    for _ in range(count):
        months.append((year, month))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(months))


def dashboard_stats(db: Session, today: date | None = None) -> dict:
    today = today or date.today()
    rows = db.execute(select(Rental).where(not_archived(Rental.archived))).scalars().all()

    available_items = 0
    low_stock = 0
    for model in (InventoryItem, Decoration):
        available_items += int(
            db.execute(
                select(func.count(model.id))
                .where(not_archived(model.archived))
                .where(model.quantity_available > 0)
            ).scalar_one()
            or 0
        )
        low_stock += int(
            db.execute(
                select(func.count(model.id))
                .where(not_archived(model.archived))
                .where(model.quantity_available <= LOW_STOCK_THRESHOLD)
            ).scalar_one()
            or 0
        )

    active_rows = [row for row in rows if row.status == "active"]
    active_orders = {group_key(row) for row in active_rows}
    pending_returns = sum(1 for row in active_rows if row.return_date is not None and row.return_date <= today)
    due_soon_end = today + timedelta(days=DUE_SOON_DAYS)
    due_soon = sum(
        1 for row in active_rows if row.return_date is not None and today <= row.return_date <= due_soon_end
    )
    overdue = sum(1 for row in rows if row.status == "overdue")
    pending_payments = sum(
        float(row.payment_amount or 0) for row in rows if row.payment_status in ("Pending", "Partial")
    )

    last_7_days = [today - timedelta(days=6 - offset) for offset in range(7)]
    weekly = [
        {"date": day.isoformat(), "count": sum(1 for row in rows if row.rent_date == day)}
        for day in last_7_days
    ]
    monthly = [
        {
            "month": MONTH_LABELS[month - 1],
            "year": year,
            "count": sum(
                1 for row in rows if row.rent_date and row.rent_date.year == year and row.rent_date.month == month
            ),
        }
        for year, month in _last_months(today, 6)
    ]

    return {
        "totalRentals": len(rows),
        "availableItems": available_items,
        "activeRentals": len(active_orders),
        "pendingReturns": pending_returns,
        "weekly": weekly,
        "monthly": monthly,
        "alerts": {
            "lowStock": low_stock,
            "overdue": overdue,
            "pendingPayments": round_money(pending_payments),
            "dueSoon": due_soon,
        },
    }
