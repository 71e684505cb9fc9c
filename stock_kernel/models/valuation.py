"""
Stock valuation report models.

ValuationReport (one warehouse, one reporting time, one method)
  └── ValuationReportRow (per product: stock, value, surplus)
        └── ValuationCostLayer (purchases, carry-overs and the surplus
            pseudo-layer that priced the row)

Reports form a chain per warehouse through ``previous_report_id``; the
carry-over layer of a row references the predecessor's row for the same
product.
Only the newest report of a warehouse may be deleted, which cascades to
its rows and layers.  Persisted layers are otherwise immutable
(db/immutability.py).
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Enum as SQLEnum
from sqlalchemy import ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import Base
from stock_kernel.db.types import ShortCode
from stock_kernel.domain.dtos import CostLayerType


class ValuationReport(Base):
    """Header of one persisted valuation report."""

    __tablename__ = "valuation_reports"

    __table_args__ = (
        Index("idx_valuation_report_warehouse_time", "warehouse_id", "reporting_time"),
    )

    warehouse_id: Mapped[UUID] = mapped_column(
        ForeignKey("warehouses.id", ondelete="CASCADE"),
        nullable=False,
    )
    reporting_time: Mapped[datetime]
    method: Mapped[ShortCode]
    previous_report_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("valuation_reports.id", ondelete="SET NULL"),
        nullable=True,
    )
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime]

    rows: Mapped[list["ValuationReportRow"]] = relationship(
        back_populates="report",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ValuationReportRow(Base):
    """Valuation of one product within a report."""

    __tablename__ = "valuation_report_rows"

    __table_args__ = (
        UniqueConstraint(
            "report_id", "product_id", "product_version_id",
            name="uq_valuation_row_product",
        ),
    )

    report_id: Mapped[UUID] = mapped_column(
        ForeignKey("valuation_reports.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id: Mapped[UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_version_id: Mapped[UUID]
    stock: Mapped[int]
    valuation_net: Mapped[Decimal]
    average_purchase_price_net: Mapped[Decimal | None] = mapped_column(nullable=True)
    surplus_stock: Mapped[int] = mapped_column(nullable=False, default=0)
    surplus_purchase_price_net: Mapped[Decimal | None] = mapped_column(nullable=True)
    surplus_price_source: Mapped[str | None] = mapped_column(String(50), nullable=True)

    report: Mapped[ValuationReport] = relationship(back_populates="rows")
    layers: Mapped[list["ValuationCostLayer"]] = relationship(
        back_populates="row",
        foreign_keys="ValuationCostLayer.row_id",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ValuationCostLayer.sequence",
    )


class ValuationCostLayer(Base):
    """
    One cost layer available to a report row.

    ``quantity_used_for_valuation`` is how much of ``quantity`` the walk
    consumed.  Carry-over layers point at the report row whose valued
    stock they continue.
    """

    __tablename__ = "valuation_cost_layers"

    __table_args__ = (
        Index("idx_cost_layer_row", "row_id", "sequence"),
    )

    row_id: Mapped[UUID] = mapped_column(
        ForeignKey("valuation_report_rows.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence: Mapped[int]
    layer_type: Mapped[CostLayerType] = mapped_column(
        SQLEnum(CostLayerType, values_callable=lambda e: [m.value for m in e], native_enum=False),
        nullable=False,
    )
    purchased_at: Mapped[datetime | None] = mapped_column(nullable=True)
    quantity: Mapped[int]
    unit_price_net: Mapped[Decimal]
    quantity_used_for_valuation: Mapped[int]
    goods_receipt_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("goods_receipts.id", ondelete="SET NULL"),
        nullable=True,
    )
    carry_over_report_row_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("valuation_report_rows.id", ondelete="SET NULL"),
        nullable=True,
    )

    row: Mapped[ValuationReportRow] = relationship(back_populates="layers", foreign_keys=[row_id])
