"""
Location Registry -- typed stock location references.

Responsibility:
    Enumerates the closed set of stock-location kinds and produces canonical,
    validated ``StockLocationReference`` values.  A reference carries exactly
    one identifier, matching its kind.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Models use
    ``to_columns`` / ``from_columns`` to map references onto the polymorphic
    discriminator columns of stock_movements and stock_records.

Invariants enforced:
    - Exactly one discriminator is populated, and it is the one belonging to
      the kind tag (validated on construction, before anything reaches the
      database; the PostgreSQL trigger re-checks it at insert time).
    - Special stock locations come from a closed vocabulary.

Failure modes:
    - InvalidLocationReference for zero or several discriminators, a
      discriminator that does not belong to the kind, an unknown kind, or an
      unknown special location name.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import UUID

from stock_kernel.exceptions import InvalidLocationReference


class LocationKind(str, Enum):
    """Kinds of stock-holding locations."""

    WAREHOUSE = "warehouse"
    BIN_LOCATION = "bin_location"
    ORDER = "order"
    RETURN_ORDER = "return_order"
    SUPPLIER_ORDER = "supplier_order"
    GOODS_RECEIPT = "goods_receipt"
    STOCK_CONTAINER = "stock_container"
    SPECIAL_STOCK_LOCATION = "special_stock_location"


class SpecialStockLocation(str, Enum):
    """Virtual locations.  Stock appears from or disappears into them."""

    UNKNOWN = "unknown"
    INITIALIZATION = "initialization"
    IMPORT = "import"
    STOCK_CORRECTION = "stock_correction"
    PRODUCT_TOTAL_STOCK_CHANGE = "product_total_stock_change"
    PRODUCT_AVAILABLE_STOCK_CHANGE = "product_available_stock_change"


# Discriminator field for each kind, in column order.
DISCRIMINATOR_FIELDS: dict[LocationKind, str] = {
    LocationKind.WAREHOUSE: "warehouse_id",
    LocationKind.BIN_LOCATION: "bin_location_id",
    LocationKind.ORDER: "order_id",
    LocationKind.RETURN_ORDER: "return_order_id",
    LocationKind.SUPPLIER_ORDER: "supplier_order_id",
    LocationKind.GOODS_RECEIPT: "goods_receipt_id",
    LocationKind.STOCK_CONTAINER: "stock_container_id",
    LocationKind.SPECIAL_STOCK_LOCATION: "special_stock_location",
}

PHYSICAL_KINDS = frozenset(
    {LocationKind.WAREHOUSE, LocationKind.BIN_LOCATION, LocationKind.STOCK_CONTAINER}
)


def _coerce_kind(kind: LocationKind | str) -> LocationKind:
    if isinstance(kind, LocationKind):
        return kind
    try:
        return LocationKind(kind)
    except ValueError:
        raise InvalidLocationReference(str(kind), "unknown location kind") from None


def _coerce_uuid(kind: LocationKind, value: Any) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise InvalidLocationReference(
            kind.value, f"identifier {value!r} is not a UUID"
        ) from None


@dataclass(frozen=True, slots=True)
class StockLocationReference:
    """
    A validated reference to one stock location.

    Contract:
        Construct via the kind-specific classmethods, ``resolve_location`` or
        ``from_columns``.  Direct construction is validated as well.

    Guarantees:
        - Exactly one of the identifier fields is set and it matches ``kind``.
        - ``key`` is canonical: equal references have equal keys.
    """

    kind: LocationKind
    warehouse_id: UUID | None = None
    bin_location_id: UUID | None = None
    order_id: UUID | None = None
    return_order_id: UUID | None = None
    supplier_order_id: UUID | None = None
    goods_receipt_id: UUID | None = None
    stock_container_id: UUID | None = None
    special_stock_location: SpecialStockLocation | None = None

    def __post_init__(self) -> None:
        kind = _coerce_kind(self.kind)
        object.__setattr__(self, "kind", kind)

        populated = tuple(
            name for name in DISCRIMINATOR_FIELDS.values()
            if getattr(self, name) is not None
        )
        if len(populated) == 0:
            raise InvalidLocationReference(kind.value, "no discriminator is set")
        if len(populated) > 1:
            raise InvalidLocationReference(
                kind.value, "more than one discriminator is set", populated
            )
        expected = DISCRIMINATOR_FIELDS[kind]
        if populated[0] != expected:
            raise InvalidLocationReference(
                kind.value,
                f"discriminator {populated[0]} does not match kind (expected {expected})",
                populated,
            )

        value = getattr(self, expected)
        if kind is LocationKind.SPECIAL_STOCK_LOCATION:
            if not isinstance(value, SpecialStockLocation):
                try:
                    value = SpecialStockLocation(value)
                except ValueError:
                    raise InvalidLocationReference(
                        kind.value, f"unknown special stock location {value!r}", populated
                    ) from None
        else:
            value = _coerce_uuid(kind, value)
        object.__setattr__(self, expected, value)

    # -- constructors -------------------------------------------------------

    @classmethod
    def warehouse(cls, warehouse_id: UUID) -> StockLocationReference:
        return cls(LocationKind.WAREHOUSE, warehouse_id=warehouse_id)

    @classmethod
    def bin_location(cls, bin_location_id: UUID) -> StockLocationReference:
        return cls(LocationKind.BIN_LOCATION, bin_location_id=bin_location_id)

    @classmethod
    def order(cls, order_id: UUID) -> StockLocationReference:
        return cls(LocationKind.ORDER, order_id=order_id)

    @classmethod
    def return_order(cls, return_order_id: UUID) -> StockLocationReference:
        return cls(LocationKind.RETURN_ORDER, return_order_id=return_order_id)

    @classmethod
    def supplier_order(cls, supplier_order_id: UUID) -> StockLocationReference:
        return cls(LocationKind.SUPPLIER_ORDER, supplier_order_id=supplier_order_id)

    @classmethod
    def goods_receipt(cls, goods_receipt_id: UUID) -> StockLocationReference:
        return cls(LocationKind.GOODS_RECEIPT, goods_receipt_id=goods_receipt_id)

    @classmethod
    def stock_container(cls, stock_container_id: UUID) -> StockLocationReference:
        return cls(LocationKind.STOCK_CONTAINER, stock_container_id=stock_container_id)

    @classmethod
    def special(cls, name: SpecialStockLocation | str) -> StockLocationReference:
        return cls(LocationKind.SPECIAL_STOCK_LOCATION, special_stock_location=name)

    @classmethod
    def from_columns(
        cls, row: Mapping[str, Any] | Any, prefix: str = ""
    ) -> StockLocationReference:
        """
        Rebuild a reference from discriminator columns.

        ``row`` may be a mapping or an object with attributes (ORM instance,
        Row).  ``prefix`` is ``"source_"`` / ``"destination_"`` for movements.
        """
        def _get(name: str) -> Any:
            if isinstance(row, Mapping):
                return row.get(f"{prefix}{name}")
            return getattr(row, f"{prefix}{name}")

        fields = {name: _get(name) for name in DISCRIMINATOR_FIELDS.values()}
        return cls(_coerce_kind(_get("location_type")), **fields)

    # -- accessors ----------------------------------------------------------

    @property
    def identifier(self) -> UUID | SpecialStockLocation:
        return getattr(self, DISCRIMINATOR_FIELDS[self.kind])

    @property
    def key(self) -> str:
        """Canonical ``<kind>:<identifier>`` key."""
        ident = self.identifier
        if isinstance(ident, SpecialStockLocation):
            return f"{self.kind.value}:{ident.value}"
        return f"{self.kind.value}:{ident}"

    @property
    def is_special(self) -> bool:
        return self.kind is LocationKind.SPECIAL_STOCK_LOCATION

    @property
    def is_physical(self) -> bool:
        return self.kind in PHYSICAL_KINDS

    def to_columns(self, prefix: str = "") -> dict[str, Any]:
        """Column payload: kind tag, all eight discriminators, and the key."""
        columns: dict[str, Any] = {f"{prefix}location_type": self.kind.value}
        for name in DISCRIMINATOR_FIELDS.values():
            value = getattr(self, name)
            if isinstance(value, SpecialStockLocation):
                value = value.value
            columns[f"{prefix}{name}"] = value
        columns[f"{prefix}location_key"] = self.key
        return columns

    def describe(self) -> dict[str, str]:
        """Minimal JSON description, used as the snapshot of virtual locations."""
        ident = self.identifier
        if isinstance(ident, SpecialStockLocation):
            return {"technical_name": ident.value}
        return {"kind": self.kind.value, "id": str(ident)}

    def __str__(self) -> str:
        return self.key


def resolve_location(kind: LocationKind | str, **fields: Any) -> StockLocationReference:
    """
    Validate a kind tag plus identifying fields and return the reference.

    ``None`` values count as absent.  Unknown field names are rejected.
    Raises InvalidLocationReference on any mismatch.
    """
    location_kind = _coerce_kind(kind)
    unknown = set(fields) - set(DISCRIMINATOR_FIELDS.values())
    if unknown:
        raise InvalidLocationReference(
            location_kind.value, f"unknown identifier field(s): {sorted(unknown)}"
        )
    return StockLocationReference(location_kind, **fields)


def count_discriminators(fields: Mapping[str, Any]) -> int:
    """Number of populated discriminator fields in ``fields``."""
    return sum(
        1 for name in DISCRIMINATOR_FIELDS.values() if fields.get(name) is not None
    )
