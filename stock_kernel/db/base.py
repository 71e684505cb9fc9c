"""
Module: stock_kernel.db.base
Responsibility: ORM base classes shared by every stock model.
Architecture position: Kernel > DB.  Imported by all model modules; imports
    only db/types.py.

Invariants enforced:
    - Every row has a UUID primary key, generated unless the caller supplies
      one (stock movements accept client ids for idempotent appends).
    - Quantities are BigInteger; prices and values are Numeric(38, 9).
    - Timestamps carry a time zone where the dialect supports one.

Failure modes:
    - IntegrityError on a duplicate id; the ledger service treats it as a
      concurrent re-submission of the same movement.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, Date, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from stock_kernel.db.types import LocationKey, PayloadHash, ShortCode


class UUIDString(TypeDecorator):
    """UUIDs as 36-character strings, identical on SQLite and PostgreSQL."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else PyUUID(value)


class Base(DeclarativeBase):
    """
    Root of the model hierarchy.

    ``type_annotation_map`` turns plain annotations into column types, so a
    model writes ``quantity: Mapped[int]`` and gets a BigInteger column.
    """

    type_annotation_map: ClassVar[dict] = {
        int: BigInteger,
        Decimal: Numeric(38, 9),
        date: Date,
        datetime: DateTime(timezone=True),
        PyUUID: UUIDString(),
        ShortCode: String(50),
        LocationKey: String(100),
        PayloadHash: String(64),
    }

    id: Mapped[PyUUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Server-stamped created_at/updated_at for registry rows.

    Warehouses, bins, products, stocktakes and batches use it.  Ledger rows
    do not: their created_at comes from the injected clock.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


UUID = PyUUID
