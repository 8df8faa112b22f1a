from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.rental_models import Decoration, InventoryItem, ItemKind, Rental, Report
from services.catalog_service import not_archived
from services.errors import translate_store_error
from services.grouping_service import LogicalOrder, group_rows
from services.pricing_service import calculate_days, round_money


TRANSACTION_LOGGER = logging.getLogger("rental_dashboard.transactions")


def item_name_map(db: Session, rows: Iterable[Rental]) -> dict[tuple[str, str], str]:
    """Resolve (kind, item id) -> item name for the given rows, archived items included."""
    inventory_ids: set[int] = set()
    decoration_ids: set[str] = set()
    for row in rows:
        if row.item_kind == ItemKind.DECORATION.value:
            decoration_ids.add(str(row.item_id))
        else:
            try:
                inventory_ids.add(int(row.item_id))
            except (TypeError, ValueError):
                continue
    names: dict[tuple[str, str], str] = {}
    if inventory_ids:
        for item_id, name in db.execute(
            select(InventoryItem.id, InventoryItem.name).where(InventoryItem.id.in_(inventory_ids))
        ).all():
            names[(ItemKind.RENTAL.value, str(item_id))] = name
    if decoration_ids:
        for item_id, name in db.execute(
            select(Decoration.id, Decoration.name).where(Decoration.id.in_(decoration_ids))
        ).all():
            names[(ItemKind.DECORATION.value, str(item_id))] = name
    return names


def serialize_rental(rental: Rental, names: dict[tuple[str, str], str] | None = None) -> dict:
    names = names or {}
    return {
        "rentalID": rental.id,
        "itemKind": rental.item_kind,
        "itemID": rental.item_id,
        "itemName": names.get((rental.item_kind, str(rental.item_id)), "Unknown"),
        "quantity": rental.quantity,
        "renterName": rental.renter_name,
        "clientPhone": rental.client_phone,
        "clientAddress": rental.client_address,
        "rentDate": rental.rent_date.isoformat() if rental.rent_date else None,
        "returnDate": rental.return_date.isoformat() if rental.return_date else None,
        "rentTime": rental.rent_time.strftime("%H:%M") if rental.rent_time else None,
        "returnTime": rental.return_time.strftime("%H:%M") if rental.return_time else None,
        "days": calculate_days(rental.rent_date, rental.return_date) if rental.return_date else None,
        "paymentAmount": round_money(rental.payment_amount),
        "advancePayment": round_money(rental.advance_payment),
        "paymentMethod": rental.payment_method,
        "paymentStatus": rental.payment_status,
        "status": rental.status,
        "archived": bool(rental.archived),
    }


def load_rows(db: Session, rental_ids: Iterable[int]) -> list[Rental]:
    ids = [int(value) for value in rental_ids]
    if not ids:
        return []
    return db.execute(select(Rental).where(Rental.id.in_(ids)).order_by(Rental.id)).scalars().all()


def list_orders(db: Session, archived: bool = False) -> list[LogicalOrder]:
    stmt = select(Rental)
    if archived:
        stmt = stmt.where(Rental.archived.is_(True))
    else:
        stmt = stmt.where(not_archived(Rental.archived))
    rows = db.execute(stmt.order_by(Rental.rent_date.desc(), Rental.id)).scalars().all()
    return group_rows(rows, item_name_map(db, rows))


def get_rental_detail(db: Session, rental_id: int) -> dict | None:
    rental = db.get(Rental, int(rental_id))
    if rental is None:
        return None
    return serialize_rental(rental, item_name_map(db, [rental]))


def archive_rows(db: Session, rental_ids: Iterable[int]) -> dict:
    """Archive each row on its own; a failing row does not stop the rest."""
    ids = [int(value) for value in rental_ids]
    archived = 0
    failures: list[dict] = []
    for rental_id in ids:
        try:
            rental = db.get(Rental, rental_id)
            if rental is None:
                failures.append({"rentalID": rental_id, "error": "Rental not found."})
                continue
            rental.archived = True
            db.commit()
            archived += 1
        except SQLAlchemyError as exc:
            db.rollback()
            error = translate_store_error(exc, f"Archiving rental {rental_id}")
            TRANSACTION_LOGGER.warning("%s", error)
            failures.append({"rentalID": rental_id, "error": str(error)})
    TRANSACTION_LOGGER.info("Archived %s of %s rentals", archived, len(ids))
    return {"archived": archived, "requested": len(ids), "failed": failures}


def delete_rows(db: Session, rental_ids: Iterable[int]) -> dict:
    """Hard delete rows; rows referenced by reports are skipped and listed."""
    ids = [int(value) for value in rental_ids]
    linked = set(
        db.execute(select(Report.rental_id).where(Report.rental_id.in_(ids)).distinct()).scalars().all()
    ) if ids else set()
    deleted = 0
    blocked: list[dict] = []
    for rental_id in ids:
        if rental_id in linked:
            blocked.append(
                {
                    "rentalID": rental_id,
                    "error": "Cannot delete rental with linked incident reports. Delete the reports first.",
                }
            )
            continue
        try:
            result = db.execute(delete(Rental).where(Rental.id == rental_id))
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            error = translate_store_error(exc, f"Deleting rental {rental_id}")
            TRANSACTION_LOGGER.warning("%s", error)
            blocked.append({"rentalID": rental_id, "error": str(error)})
            continue
        deleted += int(result.rowcount or 0)
    TRANSACTION_LOGGER.info("Deleted %s of %s rentals (%s blocked)", deleted, len(ids), len(blocked))
    return {"deleted": deleted, "requested": len(ids), "blocked": blocked}
