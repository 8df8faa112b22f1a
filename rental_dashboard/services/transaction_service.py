from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, time
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from models.rental_models import ItemKind, Rental
from services.availability_service import check
from services.cart_service import CartLine, EntryWorkspace, WorkspaceRegistry
from services.catalog_service import COMMITTED_STATUSES, get_item, get_item_row
from services.errors import AvailabilityError, ConstraintError, ValidationError, write_transaction
from services.pricing_service import calculate_days, line_total, round_money
from services.rental_service import item_name_map, load_rows, serialize_rental
from services.report_service import linked_report_count
from services.return_service import ReturnSession, begin_return


TRANSACTION_LOGGER = logging.getLogger("rental_dashboard.transactions")

RENTAL_STATUSES = ("reserved", "active", "overdue", "returned", "cancelled")
PAYMENT_STATUSES = ("Pending", "Partial", "Paid")
LINKED_REPORTS_MESSAGE = (
    "Cannot change the items of a rental with linked incident reports. "
    "Delete the reports first or keep the same items."
)


class SubmitPath(str, enum.Enum):
    RETURN = "return"
    BATCH_EDIT = "batch_edit"
    SINGLE_EDIT = "single_edit"
    COMPLEX_EDIT = "complex_edit"
    CREATE = "create"


@dataclass
class TransactionHeader:
    renter_name: str
    rent_date: date | None
    return_date: date | None = None
    status: str = "reserved"
    payment_status: str = "Pending"
    payment_method: str | None = None
    client_phone: str | None = None
    client_address: str | None = None
    rent_time: time | None = None
    return_time: time | None = None
    advance_payment: float = 0.0


@dataclass
class SubmitOutcome:
    path: SubmitPath
    rental_ids: list[int] = field(default_factory=list)
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    return_session: ReturnSession | None = None

    def to_payload(self) -> dict:
        return {
            "path": self.path.value,
            "rentalIDs": list(self.rental_ids),
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "returnSession": self.return_session.to_payload() if self.return_session else None,
        }


def open_workspace(
    db: Session,
    registry: WorkspaceRegistry,
    key: str,
    edit_rental_ids: list[int] | None = None,
) -> EntryWorkspace:
    """Start a fresh entry form, pre-filled from existing rows when editing."""
    ids = [int(value) for value in dict.fromkeys(edit_rental_ids or [])]
    rows = load_rows(db, ids)
    missing = sorted(set(ids) - {row.id for row in rows})
    if missing:
        raise ValidationError(f"Error loading rental details: unknown rental id(s) {missing}")

    workspace = registry.open(key)
    if not rows:
        return workspace
    workspace.edit_rental_ids = [row.id for row in rows]
    workspace.start_date = rows[0].rent_date
    workspace.end_date = rows[0].return_date
    names = item_name_map(db, rows)
    for row in rows:
        kind = ItemKind(row.item_kind)
        item = get_item(db, kind, row.item_id)
        price = float(item.rental_price if item else 0)
        days = None if kind == ItemKind.DECORATION else calculate_days(row.rent_date, row.return_date)
        workspace.cart.lines.append(
            CartLine(
                item_id=str(row.item_id),
                item_kind=kind,
                item_name=names.get((row.item_kind, str(row.item_id)), "Unknown"),
                quantity=int(row.quantity or 0),
                price_per_unit=price,
                days=days,
                subtotal=line_total(price, int(row.quantity or 0), days, kind == ItemKind.DECORATION),
                existing_rental_id=row.id,
            )
        )
    return workspace


def edit_header(db: Session, workspace: EntryWorkspace) -> dict | None:
    if not workspace.is_edit:
        return None
    rows = load_rows(db, workspace.edit_rental_ids[:1])
    if not rows:
        return None
    return serialize_rental(rows[0], item_name_map(db, rows))


def resolve_path(workspace: EntryWorkspace, header: TransactionHeader) -> SubmitPath:
    if header.status == "returned" and workspace.is_edit:
        return SubmitPath.RETURN
    if workspace.is_batch_edit:
        return SubmitPath.BATCH_EDIT
    if workspace.is_edit:
        lines = workspace.cart.lines
        if len(lines) == 1 and lines[0].existing_rental_id == workspace.edit_rental_ids[0]:
            return SubmitPath.SINGLE_EDIT
        return SubmitPath.COMPLEX_EDIT
    return SubmitPath.CREATE


def _validate(workspace: EntryWorkspace, header: TransactionHeader) -> None:
    if not (header.renter_name or "").strip() or header.rent_date is None:
        raise ValidationError("Please fill in client name and rental date")
    if header.return_date is not None and header.return_date < header.rent_date:
        raise ValidationError("Return date cannot be before rent date")
    if header.status not in RENTAL_STATUSES:
        raise ValidationError(f"Unknown rental status: {header.status}")
    if header.payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"Unknown payment status: {header.payment_status}")
    cart = workspace.cart
    if not cart.lines:
        raise ValidationError("Please add at least one item to the cart")
    for line in cart.lines:
        if int(line.quantity) <= 0:
            raise ValidationError(f"Quantity for {line.item_name} must be greater than zero")
    if header.return_date is None and any(line.item_kind == ItemKind.RENTAL for line in cart.lines):
        raise ValidationError("Please select a return date")
    if cart.custom_price_enabled and not (cart.custom_price or 0) > 0:
        raise ValidationError("Please enter a valid custom price")
    advance = float(header.advance_payment or 0)
    if advance < 0:
        raise ValidationError("Advance payment cannot be negative")
    if round_money(advance) > cart.payment_amount():
        raise ValidationError("Advance payment cannot exceed the total amount")


def _lock_item_rows(db: Session, lines: list[CartLine]) -> dict[tuple[str, str], object]:
    rows = {}
    for kind_value, item_id in sorted({line.key for line in lines}):
        row = get_item_row(db, ItemKind(kind_value), item_id, for_update=True)
        if row is None:
            raise ValidationError(f"Item {item_id} ({kind_value}) no longer exists")
        rows[(kind_value, item_id)] = row
    return rows


def _ensure_available(
    db: Session,
    lines: list[CartLine],
    item_rows: dict,
    header: TransactionHeader,
    exclude_for: Callable[[CartLine], int | None],
) -> None:
    start = header.rent_date
    end = header.return_date or header.rent_date
    shortfalls = []
    for line in lines:
        result = check(
            db,
            line.item_kind,
            line.item_id,
            start,
            end,
            line.quantity,
            exclude_rental_id=exclude_for(line),
            item_row=item_rows[line.key],
        )
        if not result.available:
            shortfalls.append(
                {
                    "itemName": line.item_name,
                    "requested": line.quantity,
                    "available": max(result.available_qty, 0),
                    "shortfall": line.quantity - max(result.available_qty, 0),
                }
            )
    if shortfalls:
        first = shortfalls[0]
        listing = ", ".join(
            f"{entry['itemName']} (need {entry['requested']}, only {entry['available']} available)"
            for entry in shortfalls
        )
        TRANSACTION_LOGGER.warning("Submit for %s rejected: %s", header.renter_name, listing)
        raise AvailabilityError(
            f"Insufficient inventory for: {listing}",
            item_name=first["itemName"],
            requested=first["requested"],
            available=first["available"],
            shortfalls=shortfalls,
        )


def _row_values(header: TransactionHeader, line: CartLine, amount: float, advance: float) -> dict:
    values = {
        "item_kind": line.item_kind.value,
        "item_id": str(line.item_id),
        "quantity": int(line.quantity),
        "renter_name": header.renter_name.strip(),
        "client_phone": header.client_phone or None,
        "client_address": header.client_address or None,
        "rent_date": header.rent_date,
        "return_date": header.return_date,
        "rent_time": header.rent_time,
        "return_time": header.return_time,
        "payment_amount": round_money(amount),
        "advance_payment": round_money(advance),
        "payment_method": header.payment_method or None,
        "payment_status": header.payment_status,
        "status": header.status,
    }
    if header.status in COMMITTED_STATUSES:
        values["archived"] = False
    return values


def _insert_row(db: Session, values: dict, line: CartLine, item_rows: dict) -> Rental:
    values = dict(values)
    values.setdefault("archived", False)
    rental = Rental(**values)
    db.add(rental)
    if line.is_decoration:
        item = item_rows[line.key]
        item.quantity_available = int(item.quantity_available or 0) - int(line.quantity)
    return rental


def _create(db: Session, workspace: EntryWorkspace, header: TransactionHeader) -> SubmitOutcome:
    lines = workspace.cart.lines
    amounts = workspace.cart.line_amounts()
    outcome = SubmitOutcome(path=SubmitPath.CREATE)
    with write_transaction(db, "Creating rental"):
        item_rows = _lock_item_rows(db, lines)
        _ensure_available(db, lines, item_rows, header, lambda line: None)
        created = [
            _insert_row(db, _row_values(header, line, amount, header.advance_payment if index == 0 else 0), line, item_rows)
            for index, (line, amount) in enumerate(zip(lines, amounts))
        ]
        db.flush()
        outcome.rental_ids = [rental.id for rental in created]
        outcome.inserted = len(created)
    return outcome


def _single_edit(db: Session, workspace: EntryWorkspace, header: TransactionHeader) -> SubmitOutcome:
    line = workspace.cart.lines[0]
    amount = workspace.cart.line_amounts()[0]
    rental_id = workspace.edit_rental_ids[0]
    outcome = SubmitOutcome(path=SubmitPath.SINGLE_EDIT, rental_ids=[rental_id])
    with write_transaction(db, f"Updating rental {rental_id}"):
        rental = db.execute(select(Rental).where(Rental.id == rental_id).with_for_update()).scalars().first()
        if rental is None:
            raise ValidationError(f"Rental {rental_id} no longer exists")
        item_rows = _lock_item_rows(db, [line])
        _ensure_available(db, [line], item_rows, header, lambda _line: rental_id)
        for key, value in _row_values(header, line, amount, header.advance_payment).items():
            setattr(rental, key, value)
        outcome.updated = 1
    return outcome


def _complex_edit(db: Session, workspace: EntryWorkspace, header: TransactionHeader) -> SubmitOutcome:
    lines = workspace.cart.lines
    amounts = workspace.cart.line_amounts()
    original_id = workspace.edit_rental_ids[0]
    outcome = SubmitOutcome(path=SubmitPath.COMPLEX_EDIT)
    with write_transaction(db, f"Replacing rental {original_id}"):
        if linked_report_count(db, [original_id]):
            raise ConstraintError(LINKED_REPORTS_MESSAGE)
        result = db.execute(delete(Rental).where(Rental.id == original_id))
        outcome.deleted = int(result.rowcount or 0)
        item_rows = _lock_item_rows(db, lines)
        _ensure_available(db, lines, item_rows, header, lambda line: None)
        created = [
            _insert_row(db, _row_values(header, line, amount, header.advance_payment if index == 0 else 0), line, item_rows)
            for index, (line, amount) in enumerate(zip(lines, amounts))
        ]
        db.flush()
        outcome.rental_ids = [rental.id for rental in created]
        outcome.inserted = len(created)
    return outcome


def _batch_edit(db: Session, workspace: EntryWorkspace, header: TransactionHeader) -> SubmitOutcome:
    lines = workspace.cart.lines
    amounts = workspace.cart.line_amounts()
    original_ids = list(workspace.edit_rental_ids)
    kept_ids = {line.existing_rental_id for line in lines if line.existing_rental_id is not None}
    removed_ids = [rental_id for rental_id in original_ids if rental_id not in kept_ids]
    outcome = SubmitOutcome(path=SubmitPath.BATCH_EDIT)
    with write_transaction(db, f"Updating rentals {original_ids}"):
        if removed_ids and linked_report_count(db, removed_ids):
            raise ConstraintError(LINKED_REPORTS_MESSAGE)
        existing = {
            rental.id: rental
            for rental in db.execute(
                select(Rental).where(Rental.id.in_(original_ids)).with_for_update()
            ).scalars().all()
        }
        item_rows = _lock_item_rows(db, lines)
        _ensure_available(db, lines, item_rows, header, lambda line: line.existing_rental_id)
        touched: list[Rental] = []
        for index, (line, amount) in enumerate(zip(lines, amounts)):
            values = _row_values(header, line, amount, header.advance_payment if index == 0 else 0)
            rental = existing.get(line.existing_rental_id) if line.existing_rental_id is not None else None
            if rental is not None:
                for key, value in values.items():
                    setattr(rental, key, value)
                outcome.updated += 1
            else:
                rental = _insert_row(db, values, line, item_rows)
                outcome.inserted += 1
            touched.append(rental)
        if removed_ids:
            result = db.execute(delete(Rental).where(Rental.id.in_(removed_ids)))
            outcome.deleted = int(result.rowcount or 0)
        db.flush()
        outcome.rental_ids = [rental.id for rental in touched]
    return outcome


def submit(db: Session, workspace: EntryWorkspace, header: TransactionHeader) -> SubmitOutcome:
    """Commit the workspace; the first matching path wins.

    Every path re-checks availability against the current store state inside
    the same database transaction that writes the rows.
    """
    path = resolve_path(workspace, header)
    if path == SubmitPath.RETURN:
        session = begin_return(db, workspace.edit_rental_ids)
        TRANSACTION_LOGGER.info("Rentals %s handed to return processing", workspace.edit_rental_ids)
        return SubmitOutcome(path=path, rental_ids=list(session.rental_ids), return_session=session)

    workspace.cart.recalculate_for_date_change(header.rent_date, header.return_date)
    _validate(workspace, header)
    if path == SubmitPath.BATCH_EDIT:
        outcome = _batch_edit(db, workspace, header)
    elif path == SubmitPath.SINGLE_EDIT:
        outcome = _single_edit(db, workspace, header)
    elif path == SubmitPath.COMPLEX_EDIT:
        outcome = _complex_edit(db, workspace, header)
    else:
        outcome = _create(db, workspace, header)
    TRANSACTION_LOGGER.info(
        "%s for %s committed: rentals=%s inserted=%s updated=%s deleted=%s",
        path.value,
        header.renter_name,
        outcome.rental_ids,
        outcome.inserted,
        outcome.updated,
        outcome.deleted,
    )
    workspace.reset()
    return outcome
