from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.rental_models import ItemKind, Rental
from services.catalog_service import COMMITTED_STATUSES, get_item_row, not_archived
from services.pricing_service import coerce_date


AVAILABILITY_LOGGER = logging.getLogger("rental_dashboard.availability")


@dataclass
class AvailabilityResult:
    available: bool
    available_qty: int
    committed: int = 0
    quantity_total: int = 0
    reason: str | None = None

    def to_payload(self) -> dict:
        return {
            "available": self.available,
            "availableQty": self.available_qty,
            "committed": self.committed,
            "quantityTotal": self.quantity_total,
            "reason": self.reason,
        }


def committed_for_range(
    db: Session,
    kind: ItemKind,
    item_id: Any,
    start: date,
    end: date,
    exclude_rental_ids: Iterable[int] = (),
) -> int:
    """Sum of committed quantities whose interval overlaps [start, end].

    An overlapping row counts with its full quantity even when it shares a
    single day with the range. Rows without a return date never overlap.
    """
    stmt = (
        select(func.coalesce(func.sum(Rental.quantity), 0))
        .where(Rental.item_kind == kind.value)
        .where(Rental.item_id == str(item_id))
        .where(Rental.status.in_(COMMITTED_STATUSES))
        .where(not_archived(Rental.archived))
        .where(Rental.rent_date <= end)
        .where(Rental.return_date >= start)
    )
    excluded = [int(value) for value in exclude_rental_ids if value is not None]
    if excluded:
        stmt = stmt.where(Rental.id.notin_(excluded))
    return int(db.execute(stmt).scalar_one() or 0)


def check(
    db: Session,
    kind: ItemKind,
    item_id: Any,
    start: date | str | None,
    end: date | str | None,
    requested_qty: int,
    exclude_rental_id: int | None = None,
    item_row=None,
) -> AvailabilityResult:
    start_date = coerce_date(start)
    end_date = coerce_date(end) or start_date
    if start_date is None:
        return AvailabilityResult(available=False, available_qty=0, reason="Missing start date")
    if end_date < start_date:
        return AvailabilityResult(available=False, available_qty=0, reason="Invalid dates")

    row = item_row if item_row is not None else get_item_row(db, kind, item_id)
    if row is None:
        return AvailabilityResult(available=False, available_qty=0, reason="Item not found")

    excluded = [exclude_rental_id] if exclude_rental_id is not None else []
    committed = committed_for_range(db, kind, row.id, start_date, end_date, excluded)
    total = int(row.quantity_total or 0)
    available_qty = total - committed
    result = AvailabilityResult(
        available=available_qty >= int(requested_qty),
        available_qty=available_qty,
        committed=committed,
        quantity_total=total,
    )
    if not result.available:
        result.reason = f"Only {max(available_qty, 0)} available for the selected dates"
        AVAILABILITY_LOGGER.info(
            "Insufficient %s item %s for %s..%s: requested=%s available=%s",
            kind.value,
            row.id,
            start_date,
            end_date,
            requested_qty,
            available_qty,
        )
    return result
