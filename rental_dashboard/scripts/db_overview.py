#!/usr/bin/env python3
"""Database overview and integrity checks for the rental dashboard."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


APP_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

EXPECTED_TABLES = [
    "inventory_items",
    "decorations",
    "rentals",
    "reports",
    "profiles",
    "inventory_history",
    "decoration_history",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "inventory_items": [
        "id",
        "name",
        "category",
        "quantity_total",
        "quantity_available",
        "quantity_damaged",
        "rental_price",
        "archived",
    ],
    "decorations": ["id", "name", "type", "quantity_total", "quantity_available", "rental_price", "archived"],
    "rentals": [
        "id",
        "item_kind",
        "item_id",
        "quantity",
        "renter_name",
        "rent_date",
        "return_date",
        "payment_amount",
        "advance_payment",
        "payment_status",
        "status",
        "archived",
    ],
    "reports": ["id", "rental_id", "item_name", "quantity", "type", "return_condition", "damage_notes"],
    "profiles": ["id", "email", "fullname", "role", "password_hash", "password_salt"],
}

INTEGRITY_QUERIES = {
    "rentals:return_before_rent": """
        SELECT COUNT(*) FROM rentals
        WHERE return_date IS NOT NULL AND return_date < rent_date
    """,
    "rentals:non_positive_quantity": "SELECT COUNT(*) FROM rentals WHERE quantity <= 0",
    "rentals:advance_exceeds_amount": """
        SELECT COUNT(*) FROM rentals
        WHERE advance_payment > payment_amount
    """,
    "reports:orphan_rental_id": """
        SELECT COUNT(*)
        FROM reports r
        LEFT JOIN rentals t ON t.id = r.rental_id
        WHERE r.rental_id IS NOT NULL AND t.id IS NULL
    """,
    "inventory_items:damaged_exceeds_total": """
        SELECT COUNT(*) FROM inventory_items
        WHERE quantity_damaged > quantity_total
    """,
    "decorations:damaged_exceeds_total": """
        SELECT COUNT(*) FROM decorations
        WHERE quantity_damaged > quantity_total
    """,
    # Same-day overlap only; ranged overlap is checked per booking by the app.
    "inventory_items:overbooked_same_start": """
        SELECT COUNT(*)
        FROM (
            SELECT r.item_id, r.rent_date
            FROM rentals r
            JOIN inventory_items i ON CAST(i.id AS VARCHAR(64)) = r.item_id
            WHERE r.item_kind = 'rental'
              AND r.status IN ('active', 'reserved', 'overdue')
              AND (r.archived IS NULL OR r.archived = :false_value)
            GROUP BY r.item_id, r.rent_date, i.quantity_total, i.quantity_damaged
            HAVING SUM(r.quantity) > i.quantity_total - i.quantity_damaged
        ) o
    """,
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _init_schema(engine: Engine) -> None:
    if APP_DIR not in sys.path:
        sys.path.insert(0, APP_DIR)
    from db.base import Base
    import models.rental_models  # noqa: F401

    Base.metadata.create_all(engine)


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    inspector = inspect(engine)
    present = set(inspector.get_table_names())
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _run_integrity_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    checks: list[CheckResult] = []
    for name, sql in INTEGRITY_QUERIES.items():
        if not {"rentals", name.split(":", 1)[0]} <= present:
            checks.append(CheckResult(name, False, "table missing"))
            continue
        count = int(_scalar(engine, sql, {"false_value": False}) or 0)
        checks.append(CheckResult(name, count == 0, f"count={count}"))
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = set(inspect(engine).get_table_names())
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)
    if "rentals" not in set(inspect(engine).get_table_names()):
        return
    rows = _rows(
        engine,
        """
        SELECT id, renter_name, item_kind, item_id, quantity, rent_date, return_date, status
        FROM rentals
        ORDER BY id DESC
        LIMIT :n
        """,
        {"n": sample_size},
    )
    print("rentals (recent):")
    for row in rows:
        print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Rental dashboard DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    parser.add_argument("--init", action="store_true", help="Create missing tables before checking.")
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    if args.init:
        _init_schema(engine)

    _print_results("Table Existence", _run_existence_checks(engine))
    _print_results("Column Checks", _run_column_checks(engine))
    _print_results("Integrity Checks", _run_integrity_checks(engine))
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0


if __name__ == "__main__":
    sys.exit(main())
