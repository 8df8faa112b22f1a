from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models.rental_models import InventoryItem, ItemKind, Rental
from services.catalog_service import COMMITTED_STATUSES
from services.errors import ValidationError, write_transaction
from services.history_service import log_item_history
from services.report_service import build_report, report_timestamp
from services.rental_service import item_name_map


RETURN_LOGGER = logging.getLogger("rental_dashboard.returns")

DAMAGE_SEVERITIES = ("good", "minor", "major")
DEFAULT_SEVERITY = "minor"


class ReturnState(str, enum.Enum):
    CHOICE_PENDING = "choice_pending"
    ALL_GOOD = "all_good"
    PARTIAL_MISSING = "partial_missing"
    DAMAGED = "damaged"
    COMMITTED = "committed"


@dataclass
class ReturnLine:
    rental_id: int
    item_kind: ItemKind
    item_id: str
    item_name: str
    quantity: int
    renter_name: str

    @property
    def is_decoration(self) -> bool:
        return self.item_kind == ItemKind.DECORATION

    def to_payload(self) -> dict:
        return {
            "rentalID": self.rental_id,
            "itemKind": self.item_kind.value,
            "itemID": self.item_id,
            "itemName": self.item_name,
            "quantity": self.quantity,
            "renterName": self.renter_name,
        }


@dataclass
class ReturnSession:
    rental_ids: list[int]
    lines: list[ReturnLine]
    state: ReturnState = ReturnState.CHOICE_PENDING
    outcome: ReturnState | None = None
    reports_written: int = 0
    inventory_deductions: dict[str, int] = field(default_factory=dict)

    @property
    def rental_lines(self) -> list[ReturnLine]:
        return [line for line in self.lines if not line.is_decoration]

    @property
    def decoration_lines(self) -> list[ReturnLine]:
        return [line for line in self.lines if line.is_decoration]

    @property
    def requires_choice(self) -> bool:
        return self.state == ReturnState.CHOICE_PENDING

    def to_payload(self) -> dict:
        return {
            "rentalIDs": list(self.rental_ids),
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "requiresChoice": self.requires_choice,
            "lines": [line.to_payload() for line in self.lines],
            "returnableLines": [line.to_payload() for line in self.rental_lines],
            "reportsWritten": self.reports_written,
            "inventoryDeductions": dict(self.inventory_deductions),
        }


def begin_return(db: Session, rental_ids: Iterable[int]) -> ReturnSession:
    """Load the rows being closed.

    Closures made only of decorations resolve straight to ``all_good`` and
    are committed before returning.
    """
    ids = [int(value) for value in dict.fromkeys(rental_ids)]
    if not ids:
        raise ValidationError("No rentals selected for return.")
    rows = db.execute(select(Rental).where(Rental.id.in_(ids)).order_by(Rental.id)).scalars().all()
    found = {row.id for row in rows}
    missing = [value for value in ids if value not in found]
    if missing:
        raise ValidationError(f"Error loading rental details: unknown rental id(s) {missing}")
    closed = [row.id for row in rows if row.status not in COMMITTED_STATUSES]
    if closed:
        raise ValidationError(f"Rental(s) {closed} are no longer active and cannot be returned.")
    names = item_name_map(db, rows)
    lines = [
        ReturnLine(
            rental_id=row.id,
            item_kind=ItemKind(row.item_kind),
            item_id=str(row.item_id),
            item_name=names.get((row.item_kind, str(row.item_id)), "Unknown Item"),
            quantity=int(row.quantity or 0),
            renter_name=row.renter_name,
        )
        for row in rows
    ]
    session = ReturnSession(rental_ids=[row.id for row in rows], lines=lines)
    if not session.rental_lines:
        RETURN_LOGGER.info("Rentals %s are decoration-only; closing as sold", session.rental_ids)
        complete_all_good(db, session)
    return session


def _require_pending(session: ReturnSession) -> None:
    if session.state != ReturnState.CHOICE_PENDING:
        raise ValidationError(f"Return for rentals {session.rental_ids} is already {session.state.value}.")


def _mark_returned(db: Session, rental_ids: list[int]) -> None:
    result = db.execute(
        update(Rental)
        .where(Rental.id.in_(rental_ids))
        .where(Rental.status.in_(COMMITTED_STATUSES))
        .values(status="returned")
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != len(rental_ids):
        raise ValidationError(f"Rentals {rental_ids} were already returned.")


def _finish(session: ReturnSession, outcome: ReturnState, reports_written: int) -> None:
    session.outcome = outcome
    session.reports_written = reports_written
    session.state = ReturnState.COMMITTED


def complete_all_good(db: Session, session: ReturnSession) -> ReturnSession:
    _require_pending(session)
    session.state = ReturnState.ALL_GOOD
    stamp = report_timestamp()
    reports = []
    for line in session.rental_lines:
        reports.append(
            build_report(
                line.rental_id,
                line.item_name,
                line.quantity,
                "returned",
                notes=f"All items returned by {line.renter_name}",
                return_condition="good",
                created_at=stamp,
            )
        )
    for line in session.decoration_lines:
        reports.append(
            build_report(
                line.rental_id,
                line.item_name,
                line.quantity,
                "sold",
                notes=f"Decoration sold to {line.renter_name}",
                created_at=stamp,
            )
        )
    try:
        with write_transaction(db, "Recording return"):
            _mark_returned(db, session.rental_ids)
            db.add_all(reports)
    except Exception:
        session.state = ReturnState.CHOICE_PENDING
        raise
    _finish(session, ReturnState.ALL_GOOD, len(reports))
    RETURN_LOGGER.info("Rentals %s returned in full (%s reports)", session.rental_ids, len(reports))
    return session


def complete_partial_missing(
    db: Session,
    session: ReturnSession,
    missing_by_rental_id: dict[int, int],
    notes: str | None = None,
    actor: dict | None = None,
) -> ReturnSession:
    """Record returned and missing quantities per rental row.

    Missing units are removed from the item's ``quantity_total`` (never below
    zero). Every row in the closure is marked returned.
    """
    _require_pending(session)
    additional_notes = (notes or "").strip()
    missing_input = {int(key): value for key, value in (missing_by_rental_id or {}).items()}
    stamp = report_timestamp()
    reports = []
    deductions: dict[str, int] = {}
    for line in session.rental_lines:
        try:
            missing_qty = int(missing_input.get(line.rental_id) or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Missing quantity for {line.item_name} must be a whole number.") from exc
        if missing_qty < 0 or missing_qty > line.quantity:
            raise ValidationError(
                f"Missing quantity for {line.item_name} must be between 0 and {line.quantity}."
            )
        returned_qty = line.quantity - missing_qty
        if returned_qty > 0:
            reports.append(
                build_report(
                    line.rental_id,
                    line.item_name,
                    returned_qty,
                    "returned",
                    notes=additional_notes or "Partial return",
                    created_at=stamp,
                )
            )
        if missing_qty > 0:
            reports.append(
                build_report(
                    line.rental_id,
                    line.item_name,
                    missing_qty,
                    "missing",
                    notes=additional_notes or "Items not returned",
                    created_at=stamp,
                )
            )
            deductions[line.item_id] = deductions.get(line.item_id, 0) + missing_qty
    if not reports:
        raise ValidationError("Please specify item quantities")

    session.state = ReturnState.PARTIAL_MISSING
    adjusted: list[tuple[str, str, int, int]] = []
    try:
        with write_transaction(db, "Recording partial return"):
            _mark_returned(db, session.rental_ids)
            db.add_all(reports)
            for item_id in sorted(deductions):
                item = db.execute(
                    select(InventoryItem).where(InventoryItem.id == int(item_id)).with_for_update()
                ).scalars().first()
                if item is None:
                    RETURN_LOGGER.warning("Inventory item %s not found; skipping deduction of %s", item_id, deductions[item_id])
                    continue
                old_total = int(item.quantity_total or 0)
                new_total = max(0, old_total - deductions[item_id])
                item.quantity_total = new_total
                item.quantity_available = min(int(item.quantity_available or 0), new_total)
                item.quantity_damaged = min(int(item.quantity_damaged or 0), new_total)
                adjusted.append((item_id, item.name, old_total, new_total))
    except Exception:
        session.state = ReturnState.CHOICE_PENDING
        raise

    for item_id, item_name, old_total, new_total in adjusted:
        log_item_history(
            db,
            ItemKind.RENTAL,
            "updated",
            item_id,
            item_name,
            {
                "changes": {"quantity": {"old": old_total, "new": new_total}},
                "reason": "missing on return",
                "rentalIDs": list(session.rental_ids),
            },
            actor,
        )
    session.inventory_deductions = deductions
    _finish(session, ReturnState.PARTIAL_MISSING, len(reports))
    RETURN_LOGGER.info(
        "Rentals %s returned with missing units %s (%s reports)",
        session.rental_ids,
        deductions,
        len(reports),
    )
    return session


def complete_damaged(
    db: Session,
    session: ReturnSession,
    description: str,
    severity_by_rental_id: dict[int, str] | None = None,
) -> ReturnSession:
    _require_pending(session)
    text = (description or "").strip()
    if not text:
        raise ValidationError("Please describe the damage.")
    severities = {int(key): str(value or "").strip().lower() for key, value in (severity_by_rental_id or {}).items()}
    stamp = report_timestamp()
    reports = []
    for line in session.rental_lines:
        severity = severities.get(line.rental_id) or DEFAULT_SEVERITY
        if severity not in DAMAGE_SEVERITIES:
            raise ValidationError(f"Unknown damage severity: {severity}")
        reports.append(
            build_report(
                line.rental_id,
                line.item_name,
                line.quantity,
                "returned",
                notes=f"Returned damaged by {line.renter_name}",
                return_condition="damaged",
                damage_notes=f"[{severity}] {text}",
                created_at=stamp,
            )
        )

    session.state = ReturnState.DAMAGED
    try:
        with write_transaction(db, "Recording damaged return"):
            _mark_returned(db, session.rental_ids)
            db.add_all(reports)
    except Exception:
        session.state = ReturnState.CHOICE_PENDING
        raise
    _finish(session, ReturnState.DAMAGED, len(reports))
    RETURN_LOGGER.info("Rentals %s returned with damage (%s reports)", session.rental_ids, len(reports))
    return session


def commit_return(
    db: Session,
    session: ReturnSession,
    outcome: ReturnState | str,
    *,
    missing_by_rental_id: dict[int, int] | None = None,
    notes: str | None = None,
    damage_description: str | None = None,
    severity_by_rental_id: dict[int, str] | None = None,
    actor: dict | None = None,
) -> ReturnSession:
    try:
        choice = ReturnState(getattr(outcome, "value", outcome))
    except ValueError as exc:
        raise ValidationError(f"Unknown return outcome: {outcome}") from exc
    if choice == ReturnState.ALL_GOOD:
        return complete_all_good(db, session)
    if choice == ReturnState.PARTIAL_MISSING:
        return complete_partial_missing(db, session, missing_by_rental_id or {}, notes, actor)
    if choice == ReturnState.DAMAGED:
        return complete_damaged(db, session, damage_description or "", severity_by_rental_id)
    raise ValidationError(f"Return outcome must be one of all_good, partial_missing, damaged; got {choice.value}.")
