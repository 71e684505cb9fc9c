"""
Module: stock_kernel.db.types
Responsibility: Annotated type aliases and small helpers for column types
    shared by every model.  Centralizes precision, rounding and timestamp
    normalization so models and services use identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - Stock quantities are integers.  Prices and valuations are Decimal,
      never float.
    - round_money() is the only rounding helper for valuation amounts.
"""

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated

from sqlalchemy import JSON, BigInteger, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB

# Unit price or valuation amount
Money = Annotated[Decimal, Numeric(38, 9)]

# Signed stock quantity
Quantity = Annotated[int, BigInteger]

# SHA-256 hash as hex string (64 characters)
PayloadHash = Annotated[str, String(64)]

# Short identifier strings (kind tags, technical names, codes)
ShortCode = Annotated[str, String(50)]

# Canonical location key ("<kind>:<identifier>")
LocationKey = Annotated[str, String(100)]

# Long text for names and comments
LongText = Annotated[str, String(4000)]

# Snapshot JSON; JSONB on PostgreSQL
JSONPayload = JSON().with_variant(JSONB(), "postgresql")

MONEY_DECIMAL_PLACES = 9
DEFAULT_ROUNDING = ROUND_HALF_UP


def round_money(
    value: Decimal,
    decimal_places: int = 2,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a valuation amount to the given number of decimal places.

    Preconditions: value is a Decimal.
    Postconditions: Returns value quantized using ``rounding``.
    """
    quantize_str = "0." + "0" * decimal_places if decimal_places else "0"
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def as_utc(value: datetime | None) -> datetime | None:
    """
    Normalize a datetime loaded from the database to an aware UTC value.

    SQLite returns naive datetimes for DateTime(timezone=True) columns;
    every value written by this package is UTC, so naive means UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
