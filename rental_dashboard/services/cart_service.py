from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import date

from models.rental_models import ItemKind
from services.catalog_service import CatalogItem
from services.errors import ValidationError
from services.pricing_service import calculate_days, coerce_date, distribute_amount, line_total, round_money


@dataclass
class CartLine:
    item_id: str
    item_kind: ItemKind
    item_name: str
    quantity: int
    price_per_unit: float
    days: int | None
    subtotal: float
    existing_rental_id: int | None = None

    @property
    def is_decoration(self) -> bool:
        return self.item_kind == ItemKind.DECORATION

    @property
    def key(self) -> tuple[str, str]:
        return (self.item_kind.value, str(self.item_id))

    def reprice(self) -> None:
        self.subtotal = line_total(self.price_per_unit, self.quantity, self.days, self.is_decoration)


class Cart:
    def __init__(self) -> None:
        self.lines: list[CartLine] = []
        self.custom_price_enabled = False
        self.custom_price: float | None = None

    def __len__(self) -> int:
        return len(self.lines)

    def find_line(self, kind: ItemKind, item_id: str) -> CartLine | None:
        for line in self.lines:
            if line.key == (kind.value, str(item_id)):
                return line
        return None

    def add_line(self, item: CatalogItem | None, quantity: int, days: int | None) -> str | None:
        """Add or merge a line; returns a user-facing message when refused."""
        if item is None or quantity is None or int(quantity) <= 0:
            return "Please select an item and enter a valid quantity"
        quantity = int(quantity)
        existing = self.find_line(item.kind, item.id)
        if existing is not None:
            existing.quantity += quantity
            if not existing.is_decoration:
                existing.days = max(1, int(days or 1))
            existing.reprice()
            return None
        line = CartLine(
            item_id=str(item.id),
            item_kind=item.kind,
            item_name=item.name,
            quantity=quantity,
            price_per_unit=float(item.rental_price or 0),
            days=None if item.is_decoration else max(1, int(days or 1)),
            subtotal=0.0,
        )
        line.reprice()
        self.lines.append(line)
        return None

    def remove_line(self, index: int) -> CartLine:
        if index < 0 or index >= len(self.lines):
            raise ValidationError(f"Cart line {index} does not exist.")
        return self.lines.pop(index)

    def recalculate_for_date_change(self, new_start: date | str | None, new_end: date | str | None) -> str | None:
        if not self.lines:
            return None
        start = coerce_date(new_start)
        end = coerce_date(new_end)
        if start is None or end is None:
            return None
        if end < start:
            return "Return date cannot be before rent date"
        days = calculate_days(start, end)
        for line in self.lines:
            if line.is_decoration:
                continue
            line.days = days
            line.reprice()
        return None

    def total(self) -> float:
        return sum(line.subtotal for line in self.lines)

    def set_custom_price(self, enabled: bool, amount: float | None = None) -> None:
        if not enabled:
            self.custom_price_enabled = False
            self.custom_price = None
            return
        if amount is None or float(amount) <= 0:
            raise ValidationError("Please enter a valid custom price")
        self.custom_price_enabled = True
        self.custom_price = round_money(amount)

    def payment_amount(self) -> float:
        if self.custom_price_enabled and self.custom_price is not None:
            return self.custom_price
        return round_money(self.total())

    def line_amounts(self) -> list[float]:
        """Amount persisted per line: subtotals, or the custom price split across lines."""
        subtotals = [line.subtotal for line in self.lines]
        if self.custom_price_enabled and self.custom_price is not None:
            return distribute_amount(self.custom_price, subtotals)
        return [round_money(value) for value in subtotals]

    def clear(self) -> None:
        self.lines.clear()
        self.custom_price_enabled = False
        self.custom_price = None


def serialize_cart(cart: Cart) -> dict:
    return {
        "lines": [
            {
                "index": index,
                "itemID": line.item_id,
                "itemKind": line.item_kind.value,
                "itemName": line.item_name,
                "quantity": line.quantity,
                "pricePerUnit": round_money(line.price_per_unit),
                "days": line.days,
                "subtotal": round_money(line.subtotal),
                "isDecoration": line.is_decoration,
                "existingRentalID": line.existing_rental_id,
            }
            for index, line in enumerate(cart.lines)
        ],
        "total": round_money(cart.total()),
        "customPriceEnabled": cart.custom_price_enabled,
        "customPrice": cart.custom_price,
        "paymentAmount": cart.payment_amount(),
    }


@dataclass
class EntryWorkspace:
    """Cart plus edit target for one user's transaction-entry form."""

    cart: Cart = field(default_factory=Cart)
    edit_rental_ids: list[int] = field(default_factory=list)
    start_date: date | None = None
    end_date: date | None = None

    @property
    def is_edit(self) -> bool:
        return bool(self.edit_rental_ids)

    @property
    def is_batch_edit(self) -> bool:
        return len(self.edit_rental_ids) > 1

    def rental_days(self) -> int:
        return calculate_days(self.start_date, self.end_date)

    def reset(self) -> None:
        self.cart.clear()
        self.edit_rental_ids = []
        self.start_date = None
        self.end_date = None


class WorkspaceRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._workspaces: dict[str, EntryWorkspace] = {}

    def open(self, key: str) -> EntryWorkspace:
        workspace = EntryWorkspace()
        with self._lock:
            self._workspaces[key] = workspace
        return workspace

    def get(self, key: str | None) -> EntryWorkspace | None:
        if not key:
            return None
        with self._lock:
            return self._workspaces.get(key)

    def close(self, key: str | None) -> None:
        if not key:
            return
        with self._lock:
            workspace = self._workspaces.pop(key, None)
        if workspace is not None:
            workspace.reset()
