from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.rental_models import Decoration, InventoryItem, ItemKind, Rental
from services.errors import ValidationError, write_transaction
from services.history_service import log_item_history
from services.pricing_service import round_money


CATALOG_LOGGER = logging.getLogger("rental_dashboard.catalog")

COMMITTED_STATUSES = ("active", "reserved", "overdue")


@dataclass
class CatalogItem:
    kind: ItemKind
    id: str
    name: str
    category: str | None
    quantity_total: int
    quantity_available: int
    quantity_damaged: int
    rental_price: float
    archived: bool = False
    committed_quantity: int = 0

    @property
    def is_decoration(self) -> bool:
        return self.kind == ItemKind.DECORATION

    @property
    def real_time_available(self) -> int:
        return self.quantity_total - self.committed_quantity - self.quantity_damaged


@dataclass
class CatalogSnapshot:
    items: list[CatalogItem] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def parse_kind(raw: ItemKind | str) -> ItemKind:
    try:
        return ItemKind(str(getattr(raw, "value", raw)).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown item kind: {raw}") from exc


def item_model(kind: ItemKind):
    return Decoration if kind == ItemKind.DECORATION else InventoryItem


def not_archived(column):
    return or_(column.is_(None), column.is_(False))


def _coerce_item_id(kind: ItemKind, item_id: Any):
    if kind == ItemKind.RENTAL:
        try:
            return int(item_id)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid inventory item id: {item_id}") from exc
    value = str(item_id or "").strip()
    if not value:
        raise ValidationError("Decoration id is required.")
    return value


def to_catalog_item(kind: ItemKind, row, committed: int = 0) -> CatalogItem:
    category = row.decoration_type if kind == ItemKind.DECORATION else row.category
    return CatalogItem(
        kind=kind,
        id=str(row.id),
        name=row.name,
        category=category,
        quantity_total=int(row.quantity_total or 0),
        quantity_available=int(row.quantity_available or 0),
        quantity_damaged=int(row.quantity_damaged or 0),
        rental_price=float(row.rental_price or 0),
        archived=bool(row.archived),
        committed_quantity=int(committed or 0),
    )


def serialize_item(item: CatalogItem) -> dict:
    return {
        "itemID": item.id,
        "itemKind": item.kind.value,
        "name": item.name,
        "category": item.category,
        "quantityTotal": item.quantity_total,
        "quantityAvailable": item.quantity_available,
        "quantityDamaged": item.quantity_damaged,
        "rentalPrice": round_money(item.rental_price),
        "archived": item.archived,
        "committedQuantity": item.committed_quantity,
        "realTimeAvailable": item.real_time_available,
        "isDecoration": item.is_decoration,
    }


def get_item_row(db: Session, kind: ItemKind, item_id: Any, for_update: bool = False):
    model = item_model(kind)
    stmt = select(model).where(model.id == _coerce_item_id(kind, item_id))
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalars().first()


def committed_quantities(db: Session) -> dict[tuple[str, str], int]:
    """Overall committed quantity per (kind, item id), without a date window."""
    rows = db.execute(
        select(Rental.item_kind, Rental.item_id, func.coalesce(func.sum(Rental.quantity), 0))
        .where(Rental.status.in_(COMMITTED_STATUSES))
        .where(not_archived(Rental.archived))
        .group_by(Rental.item_kind, Rental.item_id)
    ).all()
    return {(str(kind), str(item_id)): int(total or 0) for kind, item_id, total in rows}


def get_item(db: Session, kind: ItemKind, item_id: Any) -> CatalogItem | None:
    row = get_item_row(db, kind, item_id)
    if row is None:
        return None
    committed = db.execute(
        select(func.coalesce(func.sum(Rental.quantity), 0))
        .where(Rental.item_kind == kind.value)
        .where(Rental.item_id == str(row.id))
        .where(Rental.status.in_(COMMITTED_STATUSES))
        .where(not_archived(Rental.archived))
    ).scalar_one()
    return to_catalog_item(kind, row, int(committed or 0))


def load_all(db: Session) -> CatalogSnapshot:
    """Non-archived inventory items then decorations, each by name.

    Store failures are collected on the snapshot instead of raised so a
    partial catalog can still be rendered.
    """
    snapshot = CatalogSnapshot()
    rows_by_kind: list[tuple[ItemKind, list]] = []
    for kind in (ItemKind.RENTAL, ItemKind.DECORATION):
        model = item_model(kind)
        try:
            rows = db.execute(
                select(model).where(not_archived(model.archived)).order_by(model.name)
            ).scalars().all()
        except SQLAlchemyError as exc:
            db.rollback()
            CATALOG_LOGGER.warning("Loading %s items failed: %s", kind.value, exc)
            snapshot.errors.append(f"Error loading {kind.value} items: {exc}")
            continue
        rows_by_kind.append((kind, rows))

    try:
        committed = committed_quantities(db)
    except SQLAlchemyError as exc:
        db.rollback()
        CATALOG_LOGGER.warning("Loading committed quantities failed: %s", exc)
        snapshot.errors.append(f"Error loading rentals: {exc}")
        committed = {}

    for kind, rows in rows_by_kind:
        for row in rows:
            snapshot.items.append(to_catalog_item(kind, row, committed.get((kind.value, str(row.id)), 0)))
    return snapshot


def load_archived(db: Session, kind: ItemKind) -> list[CatalogItem]:
    model = item_model(kind)
    rows = db.execute(
        select(model).where(model.archived.is_(True)).order_by(model.name)
    ).scalars().all()
    return [to_catalog_item(kind, row) for row in rows]


def _validated_fields(payload: dict[str, Any]) -> dict[str, Any]:
    name = str(payload.get("name") or "").strip()
    category = str(payload.get("category") or "").strip()
    if not name:
        raise ValidationError("Item name is required.")
    if not category:
        raise ValidationError("Category/type is required.")
    try:
        total = int(payload.get("quantity_total") or 0)
        damaged = int(payload.get("quantity_damaged") or 0)
        price = float(payload.get("rental_price") or 0)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Quantities and price must be numeric.") from exc
    if total < 0:
        raise ValidationError("Total quantity cannot be negative.")
    if damaged < 0 or damaged > total:
        raise ValidationError("Damaged quantity must be between 0 and the total quantity.")
    if price < 0:
        raise ValidationError("Rental price cannot be negative.")
    return {
        "name": name,
        "category": category,
        "quantity_total": total,
        "quantity_damaged": damaged,
        "rental_price": round_money(price),
    }


def _apply_fields(kind: ItemKind, row, fields: dict[str, Any]) -> None:
    row.name = fields["name"]
    if kind == ItemKind.DECORATION:
        row.decoration_type = fields["category"]
    else:
        row.category = fields["category"]
    row.quantity_total = fields["quantity_total"]
    row.quantity_damaged = fields["quantity_damaged"]
    row.rental_price = fields["rental_price"]


def create_item(db: Session, kind: ItemKind, payload: dict[str, Any], actor: dict | None = None) -> CatalogItem:
    fields = _validated_fields(payload)
    row = item_model(kind)()
    _apply_fields(kind, row, fields)
    row.quantity_available = fields["quantity_total"]
    row.archived = False
    with write_transaction(db, f"Creating {kind.value} item"):
        db.add(row)
        db.flush()
    log_item_history(db, kind, "added", str(row.id), row.name, fields, actor)
    CATALOG_LOGGER.info("Created %s item %s (%s)", kind.value, row.id, row.name)
    return to_catalog_item(kind, row)


def update_item(db: Session, kind: ItemKind, item_id: Any, payload: dict[str, Any], actor: dict | None = None) -> CatalogItem | None:
    row = get_item_row(db, kind, item_id)
    if row is None:
        return None
    fields = _validated_fields(payload)
    before = to_catalog_item(kind, row)
    changes: dict[str, dict[str, Any]] = {}
    for key, old_value in (
        ("name", before.name),
        ("category", before.category),
        ("quantity_total", before.quantity_total),
        ("quantity_damaged", before.quantity_damaged),
        ("rental_price", round_money(before.rental_price)),
    ):
        if fields[key] != old_value:
            changes[key] = {"old": old_value, "new": fields[key]}
    with write_transaction(db, f"Updating {kind.value} item {item_id}"):
        _apply_fields(kind, row, fields)
        row.quantity_available = fields["quantity_total"]
    log_item_history(db, kind, "updated", str(row.id), row.name, changes, actor)
    CATALOG_LOGGER.info("Updated %s item %s: %s", kind.value, row.id, ", ".join(sorted(changes)) or "no changes")
    return get_item(db, kind, row.id)


def set_archived(db: Session, kind: ItemKind, item_id: Any, archived: bool, actor: dict | None = None) -> CatalogItem | None:
    row = get_item_row(db, kind, item_id)
    if row is None:
        return None
    action = "deleted" if archived else "restored"
    with write_transaction(db, f"Archiving {kind.value} item {item_id}" if archived else f"Restoring {kind.value} item {item_id}"):
        row.archived = archived
    log_item_history(db, kind, action, str(row.id), row.name, {"archived": archived}, actor)
    CATALOG_LOGGER.info("%s %s item %s", action.capitalize(), kind.value, row.id)
    return to_catalog_item(kind, row)
