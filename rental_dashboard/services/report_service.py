from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from models.rental_models import Decoration, InventoryItem, Rental, Report
from services.catalog_service import not_archived
from services.errors import ValidationError, write_transaction
from services.pricing_service import round_money


REPORT_LOGGER = logging.getLogger("rental_dashboard.reports")

REPORT_TYPES = {"returned", "missing", "sold"}
RETURN_CONDITIONS = {"good", "damaged"}
GROUPED_REPORT_TYPES = ("returned", "missing")


def report_timestamp() -> datetime:
    return datetime.now().replace(microsecond=0)


def build_report(
    rental_id: int | None,
    item_name: str,
    quantity: int,
    report_type: str,
    notes: str | None = None,
    return_condition: str | None = None,
    damage_notes: str | None = None,
    created_at: datetime | None = None,
) -> Report:
    if report_type not in REPORT_TYPES:
        raise ValidationError(f"Unknown report type: {report_type}")
    if return_condition is not None and return_condition not in RETURN_CONDITIONS:
        raise ValidationError(f"Unknown return condition: {return_condition}")
    return Report(
        rental_id=rental_id,
        item_name=item_name,
        quantity=int(quantity),
        report_type=report_type,
        notes=notes,
        return_condition=return_condition,
        damage_notes=damage_notes,
        created_at=created_at or report_timestamp(),
    )


def serialize_report(report: Report) -> dict:
    return {
        "reportID": report.id,
        "rentalID": report.rental_id,
        "itemName": report.item_name,
        "quantity": report.quantity,
        "type": report.report_type,
        "notes": report.notes,
        "returnCondition": report.return_condition,
        "damageNotes": report.damage_notes,
        "createdAt": report.created_at.isoformat() if report.created_at else None,
    }


def create_report(db: Session, payload: dict[str, Any]) -> Report:
    """Manual incident entry."""
    item_name = str(payload.get("item_name") or "").strip()
    report_type = str(payload.get("type") or "").strip().lower()
    try:
        quantity = int(payload.get("quantity") or 0)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Quantity must be a whole number.") from exc
    if not item_name or quantity <= 0 or not report_type:
        raise ValidationError("Please fill required fields (Item Name, Quantity, Type)")
    rental_id = payload.get("rental_id")
    if rental_id is not None and db.get(Rental, int(rental_id)) is None:
        raise ValidationError(f"Rental {rental_id} does not exist.")
    report = build_report(
        int(rental_id) if rental_id is not None else None,
        item_name,
        quantity,
        report_type,
        notes=(payload.get("notes") or None),
    )
    with write_transaction(db, "Saving report"):
        db.add(report)
        db.flush()
    REPORT_LOGGER.info("Report %s saved: %s x%s (%s)", report.id, item_name, quantity, report_type)
    return report


def list_reports(db: Session, report_type: str | None = None) -> list[Report]:
    stmt = select(Report)
    if report_type:
        stmt = stmt.where(Report.report_type == report_type)
    return db.execute(stmt.order_by(Report.created_at.desc(), Report.id.desc())).scalars().all()


def group_reports(reports: Iterable[Report]) -> dict[str, list[dict]]:
    """Cluster returned/missing reports written together into one entry each.

    Reports belong together when they share type, creation second and notes.
    """
    grouped: dict[str, dict[str, dict]] = {report_type: {} for report_type in GROUPED_REPORT_TYPES}
    for report in reports:
        if report.report_type not in grouped:
            continue
        stamp = report.created_at.replace(microsecond=0).isoformat() if report.created_at else ""
        notes = report.notes or ""
        key = f"{stamp}_{notes}"
        bucket = grouped[report.report_type]
        entry = bucket.get(key)
        if entry is None:
            entry = {
                "rentalID": report.rental_id,
                "notes": report.notes,
                "createdAt": report.created_at.isoformat() if report.created_at else None,
                "items": [],
                "reportIDs": [],
                "totalQuantity": 0,
            }
            bucket[key] = entry
        entry["items"].append({"name": report.item_name, "quantity": report.quantity})
        entry["reportIDs"].append(report.id)
        entry["totalQuantity"] += int(report.quantity or 0)
    return {report_type: list(bucket.values()) for report_type, bucket in grouped.items()}


def delete_reports(db: Session, report_ids: list[int]) -> int:
    ids = sorted({int(value) for value in report_ids})
    if not ids:
        return 0
    with write_transaction(db, "Deleting reports"):
        result = db.execute(delete(Report).where(Report.id.in_(ids)))
    REPORT_LOGGER.info("Deleted %s of %s reports", result.rowcount, len(ids))
    return int(result.rowcount or 0)


def linked_report_count(db: Session, rental_ids: Iterable[int]) -> int:
    ids = [int(value) for value in rental_ids]
    if not ids:
        return 0
    return int(
        db.execute(select(func.count(Report.id)).where(Report.rental_id.in_(ids))).scalar_one() or 0
    )


def analytics(db: Session) -> dict:
    rentals = db.execute(select(Rental.payment_amount, Rental.payment_method, Rental.status, Rental.archived)).all()
    total_revenue = 0.0
    active_count = 0
    by_method: dict[str, float] = {}
    for amount, method, status, archived in rentals:
        value = float(amount or 0)
        total_revenue += value
        if status == "active" and not archived:
            active_count += 1
        label = method or "Unknown"
        by_method[label] = by_method.get(label, 0.0) + value

    quantity_total = 0
    quantity_available = 0
    for model in (InventoryItem, Decoration):
        totals = db.execute(
            select(
                func.coalesce(func.sum(model.quantity_total), 0),
                func.coalesce(func.sum(model.quantity_available), 0),
            ).where(not_archived(model.archived))
        ).one()
        quantity_total += int(totals[0] or 0)
        quantity_available += int(totals[1] or 0)

    return {
        "totalRevenue": round_money(total_revenue),
        "activeRentals": active_count,
        "revenueByMethod": {method: round_money(value) for method, value in by_method.items()},
        "inventory": {
            "totalItems": quantity_total,
            "available": quantity_available,
            "rented": quantity_total - quantity_available,
        },
    }
