from __future__ import annotations

from datetime import date, datetime


def coerce_date(value: date | datetime | str | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    return date.fromisoformat(raw[:10])


def calculate_days(start: date | str | None, end: date | str | None) -> int:
    """Inclusive day count between two dates, never less than one."""
    start_date = coerce_date(start)
    end_date = coerce_date(end)
    if start_date is None or end_date is None:
        return 1
    return max(1, (end_date - start_date).days + 1)


def line_total(unit_price: float, quantity: int, days: int | None, is_sale_kind: bool) -> float:
    price = float(unit_price or 0)
    if is_sale_kind:
        return price * int(quantity)
    return price * int(quantity) * int(days or 1)


def round_money(value: float | None) -> float:
    return round(float(value or 0), 2)


def distribute_amount(total_amount: float, subtotals: list[float]) -> list[float]:
    """Split a manual total across lines proportionally to their subtotals.

    Rounding remainder lands on the last line. With no positive subtotal the
    whole amount goes to the first line.
    """
    if not subtotals:
        return []
    amount = round_money(total_amount)
    base = sum(float(value or 0) for value in subtotals)
    if base <= 0:
        return [amount] + [0.0] * (len(subtotals) - 1)
    shares = [round_money(amount * float(value or 0) / base) for value in subtotals[:-1]]
    shares.append(round_money(amount - sum(shares)))
    return shares
