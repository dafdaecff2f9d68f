"""
Module: costing_kernel.db.base
Responsibility: Declarative base and shared column types for the costing
    tables (inventory_batches, stock_movements, product_costing,
    consumption_records).
Architecture position: Kernel > DB.  Imported by every model; imports
    nothing from models/, services/, selectors/ or outer layers.

Invariants enforced:
    - Every row has a uuid4 primary key.  PostgreSQL stores it natively,
      other dialects as a 36-character string; Python always sees UUID.
    - Quantities and costs annotated as Decimal map to ExactDecimal
      (NUMERIC(38, 9) on PostgreSQL, fixed-point text elsewhere).
      No float columns.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import Date, DateTime, String
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from costing_kernel.db.types import ExactDecimal


class UUIDString(TypeDecorator):
    """UUID column: native ``uuid`` on PostgreSQL, ``VARCHAR(36)`` elsewhere."""

    impl = String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(postgresql.UUID(as_uuid=False))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(value if isinstance(value, PyUUID) else PyUUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, PyUUID):
            return value
        return PyUUID(value)


class Base(DeclarativeBase):
    """Declarative base for costing models; supplies ``id``."""

    type_annotation_map: ClassVar[dict] = {
        Decimal: ExactDecimal(),
        datetime: DateTime(timezone=True),
        date: Date,
        PyUUID: UUIDString(),
    }

    id: Mapped[PyUUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


UUID = PyUUID
