from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

from models.rental_models import Rental
from services.pricing_service import round_money


GROUP_FIELDS = ("renter_name", "rent_date", "return_date", "status", "payment_status", "payment_method")


@dataclass
class LogicalOrder:
    key: str
    renter_name: str
    client_phone: str | None
    client_address: str | None
    rent_date: date | None
    return_date: date | None
    status: str | None
    payment_status: str | None
    payment_method: str | None
    archived: bool
    total_advance: float
    items: list[dict] = field(default_factory=list)
    rental_ids: list[int] = field(default_factory=list)
    total_quantity: int = 0
    total_payment: float = 0.0

    @property
    def is_multi_item(self) -> bool:
        return len(self.rental_ids) > 1


def _key_part(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def group_key(row: Rental) -> str:
    return "|".join(_key_part(getattr(row, name)) for name in GROUP_FIELDS)


def group_rows(rows: Iterable[Rental], item_names: dict[tuple[str, str], str] | None = None) -> list[LogicalOrder]:
    """Collapse transaction rows into logical orders, newest rent date first.

    Groups sharing a rent date keep the order in which their first row was
    seen.
    """
    item_names = item_names or {}
    orders: dict[str, LogicalOrder] = {}
    for row in rows:
        key = group_key(row)
        order = orders.get(key)
        if order is None:
            order = LogicalOrder(
                key=key,
                renter_name=row.renter_name,
                client_phone=row.client_phone,
                client_address=row.client_address,
                rent_date=row.rent_date,
                return_date=row.return_date,
                status=row.status,
                payment_status=row.payment_status,
                payment_method=row.payment_method,
                archived=bool(row.archived),
                total_advance=float(row.advance_payment or 0),
            )
            orders[key] = order
        payment = float(row.payment_amount or 0)
        order.items.append(
            {
                "rentalID": row.id,
                "itemID": row.item_id,
                "itemKind": row.item_kind,
                "name": item_names.get((str(row.item_kind), str(row.item_id)), "Unknown"),
                "quantity": int(row.quantity or 0),
                "payment": round_money(payment),
            }
        )
        order.rental_ids.append(row.id)
        order.total_quantity += int(row.quantity or 0)
        order.total_payment += payment
    return sorted(orders.values(), key=lambda order: order.rent_date or date.min, reverse=True)


def serialize_order(order: LogicalOrder) -> dict:
    return {
        "groupKey": order.key,
        "rentalIDs": list(order.rental_ids),
        "renterName": order.renter_name,
        "clientPhone": order.client_phone,
        "clientAddress": order.client_address,
        "rentDate": order.rent_date.isoformat() if order.rent_date else None,
        "returnDate": order.return_date.isoformat() if order.return_date else None,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "paymentMethod": order.payment_method,
        "archived": order.archived,
        "items": list(order.items),
        "totalQuantity": order.total_quantity,
        "totalPayment": round_money(order.total_payment),
        "totalAdvance": round_money(order.total_advance),
        "balanceDue": round_money(order.total_payment - order.total_advance),
        "isMultiItem": order.is_multi_item,
    }
