from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session


STORE_LOGGER = logging.getLogger("rental_dashboard.store")


class RentalError(Exception):
    """Base class for business failures surfaced to the dashboard."""


class ValidationError(RentalError):
    pass


class AvailabilityError(RentalError):
    """Insufficient stock for one or more lines.

    ``shortfalls`` holds one dict per failing line with ``itemName``,
    ``requested``, ``available`` and ``shortfall``; the scalar attributes
    describe the first failing line.
    """

    def __init__(
        self,
        message: str,
        *,
        item_name: str | None = None,
        requested: int = 0,
        available: int = 0,
        shortfalls: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.item_name = item_name
        self.requested = int(requested)
        self.available = int(available)
        self.shortfall = max(0, self.requested - self.available)
        self.shortfalls = list(shortfalls or [])


class ConstraintError(RentalError):
    pass


class StoreError(RentalError):
    pass


def translate_store_error(exc: SQLAlchemyError, action: str) -> RentalError:
    if isinstance(exc, IntegrityError):
        return ConstraintError(f"{action} violates a data constraint: {exc.orig}")
    return StoreError(f"{action} failed: {exc}")


@contextmanager
def write_transaction(db: Session, action: str) -> Iterator[Session]:
    """Run a block of writes as one commit.

    Any failure rolls the session back. Store exceptions are re-raised as
    ``ConstraintError`` / ``StoreError``; business errors propagate unchanged.
    """
    try:
        yield db
        db.commit()
    except RentalError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        STORE_LOGGER.warning("%s failed: %s", action, exc)
        raise translate_store_error(exc, action) from exc
