"""
Stock movement ledger models.

StockMovement is the append-only source of truth: one row per transfer of a
positive integer quantity of one product from a source location to a
destination location.  Each location is stored as a kind tag plus eight
mutually exclusive nullable discriminator columns (exactly one populated)
and a canonical ``*_location_key`` used for lookups.

Immutability:
    ORM listeners (db/immutability.py) reject UPDATE and DELETE; on
    PostgreSQL the ledger triggers re-check discriminators on INSERT and
    block UPDATE/DELETE outside an audited backfill.

Location columns carry no foreign keys: the snapshots keep a movement
meaningful after the referenced location is renamed or deleted.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UUIDString
from stock_kernel.db.types import JSONPayload, LocationKey, PayloadHash, ShortCode
from stock_kernel.domain.dtos import ProductRef
from stock_kernel.domain.locations import StockLocationReference


class StockMovementProcess(Base):
    """Groups line-level movements under one logical operation (e.g. one shipment)."""

    __tablename__ = "stock_movement_processes"

    process_type: Mapped[ShortCode]
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime]


class StockMovement(Base):
    """
    One immutable ledger row.

    Invariants:
        - quantity > 0 (CHECK constraint).
        - source and destination each have exactly one discriminator.
        - payload_hash identifies the request payload for idempotent replays.
    """

    __tablename__ = "stock_movements"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_movement_quantity_positive"),
        Index("idx_movement_product_created", "product_id", "created_at"),
        Index("idx_movement_source_key", "source_location_key", "product_id", "created_at"),
        Index("idx_movement_destination_key", "destination_location_key", "product_id", "created_at"),
        Index("idx_movement_process", "stock_movement_process_id"),
    )

    product_id: Mapped[UUID] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
    )
    product_version_id: Mapped[UUID]
    quantity: Mapped[int]

    source_location_type: Mapped[ShortCode]
    source_warehouse_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    source_bin_location_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    source_order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    source_return_order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    source_supplier_order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    source_goods_receipt_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    source_stock_container_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    source_special_stock_location: Mapped[str | None] = mapped_column(String(50), nullable=True)
    source_location_key: Mapped[LocationKey]

    destination_location_type: Mapped[ShortCode]
    destination_warehouse_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    destination_bin_location_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    destination_order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    destination_return_order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    destination_supplier_order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    destination_goods_receipt_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    destination_stock_container_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    destination_special_stock_location: Mapped[str | None] = mapped_column(String(50), nullable=True)
    destination_location_key: Mapped[LocationKey]

    source_location_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False)
    destination_location_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False)

    stock_movement_process_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("stock_movement_processes.id"),
        nullable=True,
    )
    user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload_hash: Mapped[PayloadHash]
    created_at: Mapped[datetime]

    @property
    def product(self) -> ProductRef:
        return ProductRef(self.product_id, self.product_version_id)

    @property
    def source(self) -> StockLocationReference:
        return StockLocationReference.from_columns(self, prefix="source_")

    @property
    def destination(self) -> StockLocationReference:
        return StockLocationReference.from_columns(self, prefix="destination_")

    def __repr__(self) -> str:
        return (
            f"<StockMovement {self.id} {self.quantity} "
            f"{self.source_location_key} -> {self.destination_location_key}>"
        )
