"""
Batch (lot) tracking models.

Batch                       identity of a lot of one product (number or
                            best-before date)
BatchStockMapping           quantity of a batch at one stock record
                            (physical locations only; rebuildable)
BatchStockMovementMapping   quantity of a batch carried by one movement,
                            user-entered or system-generated (append-only)

Only physical locations (warehouse, bin location, stock container) carry
batch stock.  Every other location, special locations in particular, is
batch-void: no BatchStockMapping ever references its stock record.
"""

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import Enum as SQLEnum
from sqlalchemy import CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import Base, TrackedBase
from stock_kernel.domain.dtos import BatchOrigin


class Batch(TrackedBase):
    """
    A lot of one product.

    ``identity_key`` is the batch number or ``bbd:<iso date>`` when only a
    best-before date identifies it; unique per product.
    """

    __tablename__ = "batches"

    __table_args__ = (
        UniqueConstraint("product_id", "identity_key", name="uq_batch_product_identity"),
    )

    product_id: Mapped[UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
    )
    identity_key: Mapped[str] = mapped_column(String(255), nullable=False)
    number: Mapped[str | None] = mapped_column(String(255), nullable=True)
    best_before_date: Mapped[date | None] = mapped_column(nullable=True)
    production_date: Mapped[date | None] = mapped_column(nullable=True)

    stock_mappings: Mapped[list["BatchStockMapping"]] = relationship(
        back_populates="batch",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class BatchStockMapping(Base):
    """Quantity of a batch at one stock record.  Rows with quantity 0 are deleted."""

    __tablename__ = "batch_stock_mappings"

    __table_args__ = (
        UniqueConstraint("stock_record_id", "batch_id", name="uq_batch_stock_mapping"),
        Index("idx_batch_stock_mapping_batch", "batch_id"),
    )

    stock_record_id: Mapped[UUID] = mapped_column(
        ForeignKey("stock_records.id", ondelete="CASCADE"),
        nullable=False,
    )
    batch_id: Mapped[UUID] = mapped_column(
        ForeignKey("batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    quantity: Mapped[int]
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    batch: Mapped[Batch] = relationship(back_populates="stock_mappings")


class BatchStockMovementMapping(Base):
    """
    Quantity of a batch that travelled with one movement.

    ``source_quantity`` left the source, ``quantity`` arrived at the
    destination.  They are equal for user-entered allocations; inferred rows
    remove more from the source than they can prove arrived.  Replaying
    these two columns reproduces every BatchStockMapping.
    """

    __tablename__ = "batch_stock_movement_mappings"

    __table_args__ = (
        UniqueConstraint(
            "stock_movement_id", "batch_id", "origin",
            name="uq_batch_movement_mapping",
        ),
        CheckConstraint("quantity >= 0", name="ck_batch_movement_mapping_quantity"),
        CheckConstraint("source_quantity >= 0", name="ck_batch_movement_mapping_source_quantity"),
        Index("idx_batch_movement_mapping_movement", "stock_movement_id"),
    )

    stock_movement_id: Mapped[UUID] = mapped_column(
        ForeignKey("stock_movements.id"),
        nullable=False,
    )
    batch_id: Mapped[UUID] = mapped_column(
        ForeignKey("batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    quantity: Mapped[int]
    source_quantity: Mapped[int]
    origin: Mapped[BatchOrigin] = mapped_column(
        SQLEnum(BatchOrigin, values_callable=lambda e: [m.value for m in e], native_enum=False),
        nullable=False,
    )
    created_at: Mapped[datetime]
