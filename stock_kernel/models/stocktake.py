"""
Stocktaking models.

Stocktake (header, active -> completed)
  └── StocktakeCountingProcess (one per counted bin location; at most one
      for the warehouse's unknown location, bin_location_id NULL)
        └── StocktakeCountingProcessItem (counted quantity + stock snapshot
            at counting time; unique per product within a process)
  └── StocktakeProductSummary (written once on completion)

All rows are reconciliation data: deleting them never touches the ledger or
the projection.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import Enum as SQLEnum
from sqlalchemy import ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import Base, UUIDString
from stock_kernel.db.types import JSONPayload


class StocktakeStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class Stocktake(Base):
    """A bounded counting exercise over one warehouse."""

    __tablename__ = "stocktakes"

    __table_args__ = (
        Index("idx_stocktake_warehouse_status", "warehouse_id", "status"),
    )

    warehouse_id: Mapped[UUID] = mapped_column(
        ForeignKey("warehouses.id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    number: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[StocktakeStatus] = mapped_column(
        SQLEnum(StocktakeStatus, values_callable=lambda e: [m.value for m in e], native_enum=False),
        nullable=False,
        default=StocktakeStatus.ACTIVE,
    )
    started_at: Mapped[datetime]
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    correction_process_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("stock_movement_processes.id"),
        nullable=True,
    )

    counting_processes: Mapped[list["StocktakeCountingProcess"]] = relationship(
        back_populates="stocktake",
        cascade="all, delete-orphan",
        order_by="StocktakeCountingProcess.created_at",
    )

    @property
    def is_active(self) -> bool:
        return self.status == StocktakeStatus.ACTIVE


class StocktakeCountingProcess(Base):
    """Counting of one bin location, or of the warehouse's unknown location."""

    __tablename__ = "stocktake_counting_processes"

    __table_args__ = (
        UniqueConstraint("stocktake_id", "bin_location_id", name="uq_counting_process_bin_location"),
    )

    stocktake_id: Mapped[UUID] = mapped_column(
        ForeignKey("stocktakes.id", ondelete="CASCADE"),
        nullable=False,
    )
    bin_location_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("bin_locations.id", ondelete="SET NULL"),
        nullable=True,
    )
    bin_location_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONPayload, nullable=True)
    number: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime]

    stocktake: Mapped[Stocktake] = relationship(back_populates="counting_processes")
    items: Mapped[list["StocktakeCountingProcessItem"]] = relationship(
        back_populates="counting_process",
        cascade="all, delete-orphan",
    )

    @property
    def is_unknown_location(self) -> bool:
        return self.bin_location_id is None and self.bin_location_snapshot is None


class StocktakeCountingProcessItem(Base):
    """
    A counted quantity of one product.

    ``stock_at_counting`` is the ledger-reconstructed stock of the counted
    location at ``counted_at``; differences are measured against it.
    """

    __tablename__ = "stocktake_counting_process_items"

    __table_args__ = (
        UniqueConstraint(
            "counting_process_id", "product_id", "product_version_id",
            name="uq_counting_process_item_product",
        ),
    )

    counting_process_id: Mapped[UUID] = mapped_column(
        ForeignKey("stocktake_counting_processes.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id: Mapped[UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_version_id: Mapped[UUID]
    quantity: Mapped[int]
    stock_at_counting: Mapped[int]
    counted_at: Mapped[datetime]

    counting_process: Mapped[StocktakeCountingProcess] = relationship(back_populates="items")


class StocktakeProductSummary(Base):
    """Per-product result of a completed stocktake."""

    __tablename__ = "stocktake_product_summaries"

    __table_args__ = (
        UniqueConstraint(
            "stocktake_id", "product_id", "product_version_id",
            name="uq_stocktake_summary_product",
        ),
    )

    stocktake_id: Mapped[UUID] = mapped_column(
        ForeignKey("stocktakes.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id: Mapped[UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_version_id: Mapped[UUID]
    counted_stock: Mapped[int]
    expected_stock: Mapped[int]
    absolute_difference: Mapped[int]
    percentage_difference: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    warehouse_stock: Mapped[int]
