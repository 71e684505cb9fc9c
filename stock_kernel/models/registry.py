"""
Registry models: products, warehouses, bin locations, goods receipts.

These are the master data the ledger resolves references against.  They
are mutable and owned by external collaborators; the ledger only reads them
(product existence, warehouse membership of bin locations, snapshot
descriptions, purchase prices).
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import Base, TrackedBase


class Product(TrackedBase):
    """
    A versioned product.

    ``purchase_price_net`` is the fallback price for valuation surplus stock.
    """

    __tablename__ = "products"

    __table_args__ = (
        UniqueConstraint("product_number", name="uq_product_number"),
        Index("idx_product_id_version", "id", "version_id"),
    )

    version_id: Mapped[UUID]
    product_number: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    purchase_price_net: Mapped[Decimal | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Product {self.product_number}>"


class Warehouse(TrackedBase):
    """A warehouse.  Stock at the warehouse itself is its "unknown location" bucket."""

    __tablename__ = "warehouses"

    __table_args__ = (UniqueConstraint("code", name="uq_warehouse_code"),)

    code: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    bin_locations: Mapped[list["BinLocation"]] = relationship(
        back_populates="warehouse",
        cascade="all, delete-orphan",
    )

    def snapshot(self) -> dict[str, str]:
        return {"code": self.code, "name": self.name}


class BinLocation(TrackedBase):
    """A bin inside a warehouse."""

    __tablename__ = "bin_locations"

    __table_args__ = (
        UniqueConstraint("warehouse_id", "code", name="uq_bin_location_code"),
    )

    warehouse_id: Mapped[UUID] = mapped_column(
        ForeignKey("warehouses.id", ondelete="CASCADE"),
        nullable=False,
    )
    code: Mapped[str] = mapped_column(String(64), nullable=False)

    warehouse: Mapped[Warehouse] = relationship(back_populates="bin_locations")

    def snapshot(self) -> dict[str, str]:
        return {
            "code": self.code,
            "warehouse_code": self.warehouse.code,
            "warehouse_name": self.warehouse.name,
        }


class GoodsReceipt(Base):
    """A goods receipt; movements out of it into a warehouse are purchases."""

    __tablename__ = "goods_receipts"

    number: Mapped[str] = mapped_column(String(64), nullable=False)
    warehouse_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("warehouses.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime]

    line_items: Mapped[list["GoodsReceiptLineItem"]] = relationship(
        back_populates="goods_receipt",
        cascade="all, delete-orphan",
    )


class GoodsReceiptLineItem(Base):
    """Received quantity and net unit price of one product on a goods receipt."""

    __tablename__ = "goods_receipt_line_items"

    __table_args__ = (
        UniqueConstraint("goods_receipt_id", "product_id", name="uq_goods_receipt_product"),
    )

    goods_receipt_id: Mapped[UUID] = mapped_column(
        ForeignKey("goods_receipts.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id: Mapped[UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
    )
    quantity: Mapped[int]
    unit_price_net: Mapped[Decimal]

    goods_receipt: Mapped[GoodsReceipt] = relationship(back_populates="line_items")
