"""
Stock projection model.

StockRecord is the materialized current quantity per (product, location).
It is a rebuildable cache over the movement ledger, never ground truth:

    quantity(p, loc) == sum(in-movements) - sum(out-movements)

Rows are written only through the atomic insert-or-increment in
services/projection_service.py (ON CONFLICT on the unique key below) and by
the rebuild.  Warehouses and bin locations own their rows (ON DELETE
CASCADE); other kinds reference external entities and carry no FK.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UUIDString
from stock_kernel.db.types import LocationKey, ShortCode
from stock_kernel.domain.dtos import ProductRef
from stock_kernel.domain.locations import StockLocationReference


class StockRecord(Base):
    """One projection row.  ``quantity`` may be negative (oversell)."""

    __tablename__ = "stock_records"

    __table_args__ = (
        UniqueConstraint(
            "product_id", "product_version_id", "location_key",
            name="uq_stock_record_product_location",
        ),
        Index("idx_stock_record_location", "location_key"),
        Index("idx_stock_record_warehouse", "warehouse_id", "product_id"),
        Index("idx_stock_record_bin_location", "bin_location_id", "product_id"),
    )

    product_id: Mapped[UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_version_id: Mapped[UUID]

    location_type: Mapped[ShortCode]
    warehouse_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("warehouses.id", ondelete="CASCADE"), nullable=True
    )
    bin_location_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("bin_locations.id", ondelete="CASCADE"), nullable=True
    )
    order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    return_order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    supplier_order_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    goods_receipt_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    stock_container_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    special_stock_location: Mapped[str | None] = mapped_column(String(50), nullable=True)
    location_key: Mapped[LocationKey]

    quantity: Mapped[int] = mapped_column(nullable=False, default=0)
    updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def product(self) -> ProductRef:
        return ProductRef(self.product_id, self.product_version_id)

    @property
    def location(self) -> StockLocationReference:
        return StockLocationReference.from_columns(self)

    def __repr__(self) -> str:
        return f"<StockRecord {self.product_id} @ {self.location_key} = {self.quantity}>"
