import enum
import uuid

from sqlalchemy import JSON, Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Time
from sqlalchemy.sql import func

from db.base import Base


class ItemKind(str, enum.Enum):
    RENTAL = "rental"
    DECORATION = "decoration"


def _new_uuid() -> str:
    return str(uuid.uuid4())


class InventoryItem(Base):
    __tablename__ = "inventory_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    category = Column(String(100))
    quantity_total = Column(Integer, nullable=False, default=0)
    quantity_available = Column(Integer, nullable=False, default=0)
    quantity_damaged = Column(Integer, nullable=False, default=0)
    rental_price = Column(Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    archived = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Decoration(Base):
    __tablename__ = "decorations"

    id = Column(String(36), primary_key=True, default=_new_uuid)
    name = Column(String(255), nullable=False)
    decoration_type = Column("type", String(100))
    quantity_total = Column(Integer, nullable=False, default=0)
    quantity_available = Column(Integer, nullable=False, default=0)
    quantity_damaged = Column(Integer, nullable=False, default=0)
    rental_price = Column(Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    archived = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Rental(Base):
    __tablename__ = "rentals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_kind = Column(String(20), nullable=False, default=ItemKind.RENTAL.value)
    item_id = Column(String(64), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    renter_name = Column(String(255), nullable=False)
    client_phone = Column(String(50))
    client_address = Column(String(500))
    rent_date = Column(Date, nullable=False, index=True)
    return_date = Column(Date, index=True)
    rent_time = Column(Time)
    return_time = Column(Time)
    payment_amount = Column(Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    advance_payment = Column(Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    payment_method = Column(String(50))
    payment_status = Column(String(20), nullable=False, default="Pending")
    status = Column(String(20), nullable=False, default="reserved")
    # NULL on legacy rows; treated as not archived.
    archived = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Report(Base):
    __tablename__ = "reports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rental_id = Column(Integer, ForeignKey("rentals.id"), index=True)
    item_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    report_type = Column("type", String(20), nullable=False)
    notes = Column(Text)
    return_condition = Column(String(20))
    damage_notes = Column(Text)
    created_at = Column(DateTime, server_default=func.now())


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_new_uuid)
    email = Column(String(255), nullable=False, unique=True)
    fullname = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="staff")
    password_hash = Column(String(128))
    password_salt = Column(String(64))
    created_at = Column(DateTime, server_default=func.now())


class InventoryHistory(Base):
    __tablename__ = "inventory_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_id = Column(String(64), nullable=False, index=True)
    item_name = Column(String(255))
    action = Column(String(20), nullable=False)
    user_id = Column(String(36))
    user_name = Column(String(255))
    details = Column(JSON)
    created_at = Column(DateTime, server_default=func.now())


class DecorationHistory(Base):
    __tablename__ = "decoration_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    decoration_id = Column(String(64), nullable=False, index=True)
    decoration_name = Column(String(255))
    action = Column(String(20), nullable=False)
    user_id = Column(String(36))
    user_name = Column(String(255))
    details = Column(JSON)
    created_at = Column(DateTime, server_default=func.now())
