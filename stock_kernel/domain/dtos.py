"""
Data transfer objects for the stock ledger boundary.

Frozen dataclasses exchanged between callers, services and selectors.
Selectors return these, never ORM instances.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from stock_kernel.domain.locations import StockLocationReference


class NegativeStockPolicy(str, Enum):
    """Whether a movement may drive a physical location below zero."""

    ALLOW = "allow"
    REJECT = "reject"


class CostLayerType(str, Enum):
    """Where a valuation cost layer came from."""

    PURCHASE = "purchase"
    CARRY_OVER = "carry_over"
    SURPLUS = "surplus"


class BatchOrigin(str, Enum):
    """Who decided that a batch quantity moved with a movement."""

    USER_ENTERED = "user_entered"
    SYSTEM_GENERATED = "system_generated"


@dataclass(frozen=True, slots=True)
class ProductRef:
    """Product reference: products are versioned, so both ids are required."""

    product_id: UUID
    product_version_id: UUID


@dataclass(frozen=True)
class MovementRequest:
    """
    One requested movement of ``quantity`` units of a product.

    ``batches`` maps batch id -> quantity for explicitly allocated batches;
    the remainder of the quantity is handled by conservative inference.
    """

    product: ProductRef
    quantity: int
    source: StockLocationReference
    destination: StockLocationReference
    source_snapshot: Mapping[str, Any] | None = None
    destination_snapshot: Mapping[str, Any] | None = None
    movement_id: UUID | None = None
    user_id: UUID | None = None
    process_id: UUID | None = None
    comment: str | None = None
    batches: Mapping[UUID, int] | None = None
    batch_origin: BatchOrigin = BatchOrigin.USER_ENTERED

    def payload(self) -> dict[str, Any]:
        """Canonical payload used for the idempotency hash."""
        return {
            "product_id": self.product.product_id,
            "product_version_id": self.product.product_version_id,
            "quantity": self.quantity,
            "source": self.source.key,
            "destination": self.destination.key,
            "source_snapshot": dict(self.source_snapshot) if self.source_snapshot is not None else None,
            "destination_snapshot": (
                dict(self.destination_snapshot) if self.destination_snapshot is not None else None
            ),
            "user_id": self.user_id,
            "process_id": self.process_id,
            "comment": self.comment,
            "batches": (
                {str(k): v for k, v in self.batches.items()} if self.batches else None
            ),
        }


@dataclass(frozen=True, slots=True)
class StockMovementView:
    """Read model of one ledger row."""

    id: UUID
    product: ProductRef
    quantity: int
    source: StockLocationReference
    destination: StockLocationReference
    source_snapshot: dict[str, Any]
    destination_snapshot: dict[str, Any]
    created_at: datetime
    process_id: UUID | None = None
    user_id: UUID | None = None
    comment: str | None = None

    def signed_quantity_at(self, location: StockLocationReference) -> int:
        """Net effect of this movement on ``location`` (0 if unrelated)."""
        delta = 0
        if self.destination.key == location.key:
            delta += self.quantity
        if self.source.key == location.key:
            delta -= self.quantity
        return delta


@dataclass(frozen=True, slots=True)
class StockRecordView:
    """Read model of one projection row."""

    product: ProductRef
    location: StockLocationReference
    quantity: int


@dataclass(frozen=True, slots=True)
class RebuildResult:
    """Outcome of a projection rebuild."""

    product_scope: tuple[UUID, ...] | None
    movements_replayed: int
    rows_written: int
    batch_mappings_written: int


@dataclass(frozen=True, slots=True)
class BatchQuantity:
    """Quantity of one batch at one stock record."""

    batch_id: UUID
    quantity: int
    number: str | None = None
    best_before_date: date | None = None


@dataclass(frozen=True)
class AppendOutcome:
    """Internal result of one append: the id and whether it was a replay."""

    movement_id: UUID
    duplicate: bool = False
    inferred_batches: tuple[tuple[UUID, int], ...] = field(default_factory=tuple)
