from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.rental_models import DecorationHistory, InventoryHistory, ItemKind


INVENTORY_LOGGER = logging.getLogger("rental_dashboard.inventory")

HISTORY_ACTIONS = {"added", "updated", "deleted", "restored"}


def log_item_history(
    db: Session,
    kind: ItemKind,
    action: str,
    item_id: str,
    item_name: str | None,
    details: dict[str, Any] | None = None,
    actor: dict | None = None,
) -> bool:
    """Record an already committed item mutation.

    Runs in its own commit. A failed history write is logged and rolled back;
    the item mutation it describes stays committed.
    """
    actor = actor or {}
    if kind == ItemKind.DECORATION:
        entry = DecorationHistory(decoration_id=str(item_id), decoration_name=item_name)
    else:
        entry = InventoryHistory(item_id=str(item_id), item_name=item_name)
    entry.action = action
    entry.user_id = actor.get("id")
    entry.user_name = actor.get("fullname") or "Unknown"
    entry.details = details or {}
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        INVENTORY_LOGGER.warning("History write for %s %s (%s) failed: %s", kind.value, item_id, action, exc)
        return False
    return True


def _serialize_entry(kind: ItemKind, entry) -> dict:
    if kind == ItemKind.DECORATION:
        item_id, item_name = entry.decoration_id, entry.decoration_name
    else:
        item_id, item_name = entry.item_id, entry.item_name
    return {
        "historyID": entry.id,
        "itemKind": kind.value,
        "itemID": item_id,
        "itemName": item_name,
        "action": entry.action,
        "userID": entry.user_id,
        "userName": entry.user_name,
        "details": entry.details or {},
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


def list_history(db: Session, action: str | None = None, user_name: str | None = None, limit: int = 500) -> list[dict]:
    entries: list[dict] = []
    for kind, model in ((ItemKind.RENTAL, InventoryHistory), (ItemKind.DECORATION, DecorationHistory)):
        stmt = select(model)
        if action:
            stmt = stmt.where(model.action == action)
        if user_name:
            stmt = stmt.where(model.user_name == user_name)
        stmt = stmt.order_by(model.created_at.desc(), model.id.desc()).limit(limit)
        entries.extend(_serialize_entry(kind, entry) for entry in db.execute(stmt).scalars().all())
    entries.sort(key=lambda item: item["createdAt"] or "", reverse=True)
    return entries[:limit]
