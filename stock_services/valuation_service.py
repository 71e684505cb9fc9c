"""
stock_services.valuation_service -- stock valuation report lifecycle.

Responsibility:
    Generates valuation reports for a warehouse at a reporting time:
    ledger-reconstructed stock per product, valued by walking the cost
    layers available to the report (one carry-over layer per product from
    the previous report plus goods-receipt purchases since then).  Reads,
    previews and deletes reports.

Architecture position:
    Services -- orchestration over the kernel (selectors, models) and the
    pure valuation engine (stock_engines.valuation).  Flushes only.

Invariants enforced:
    - Reports of a warehouse form a chain ordered by reporting time; a
      report can only be generated after the newest one.
    - Only the newest report of a warehouse can be deleted.
    - A preview computes the same result as a real run and writes nothing.
    - Valuation never touches the ledger or the projection.

Failure modes:
    - LocationNotFound for an unknown warehouse.
    - ValuationReportOutdated when a report at or after the reporting time
      exists.
    - ValuationReportNotFound, ValuationReportNotDeletable.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_engines.valuation import (
    CostLayer,
    ProductValuation,
    ValuationMethod,
    carry_over_layers,
    value_product,
)
from stock_kernel.db.types import as_utc
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import CostLayerType, ProductRef
from stock_kernel.domain.locations import LocationKind
from stock_kernel.exceptions import (
    LocationNotFound,
    ValuationReportNotDeletable,
    ValuationReportNotFound,
    ValuationReportOutdated,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.movement import StockMovement
from stock_kernel.models.registry import GoodsReceiptLineItem, Product, Warehouse
from stock_kernel.models.valuation import ValuationCostLayer, ValuationReport, ValuationReportRow
from stock_kernel.selectors.stock_selector import StockSelector

logger = get_logger("services.valuation")


@dataclass(frozen=True)
class ValuationLayerView:
    layer_type: CostLayerType
    quantity: int
    unit_price_net: Decimal
    quantity_used_for_valuation: int
    purchased_at: datetime | None = None
    goods_receipt_id: UUID | None = None
    carry_over_report_row_id: UUID | None = None


@dataclass(frozen=True)
class ValuationRowView:
    product: ProductRef
    stock: int
    valuation_net: Decimal
    average_purchase_price_net: Decimal | None
    surplus_stock: int
    surplus_purchase_price_net: Decimal | None
    surplus_price_source: str | None
    layers: tuple[ValuationLayerView, ...]


@dataclass(frozen=True)
class ValuationReportResult:
    """A generated (or previewed) valuation report."""

    report_id: UUID | None
    warehouse_id: UUID
    reporting_time: datetime
    method: ValuationMethod
    previous_report_id: UUID | None
    rows: tuple[ValuationRowView, ...]
    preview: bool = False

    @property
    def total_valuation_net(self) -> Decimal:
        return sum((row.valuation_net for row in self.rows), Decimal("0"))

    def row_for(self, product: ProductRef) -> ValuationRowView | None:
        for row in self.rows:
            if row.product == product:
                return row
        return None


class StockValuationService:
    """
    Valuation reports per warehouse.

    Contract:
        Receives a Session, an optional Clock and the default valuation
        method (from configuration).  ``generate_report`` may override the
        method per call.

    Non-goals:
        - Accounting postings of the valuation.
        - Currency conversion; all prices are net in one currency.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        default_method: ValuationMethod | str = ValuationMethod.MOST_RECENT_FIRST,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self.default_method = ValuationMethod(default_method)
        self.stock = StockSelector(session)

    # =========================================================================
    # Generation
    # =========================================================================

    def generate_report(
        self,
        warehouse_id: UUID,
        reporting_time: datetime,
        method: ValuationMethod | str | None = None,
        preview: bool = False,
        comment: str | None = None,
    ) -> ValuationReportResult:
        """
        Value the stock of ``warehouse_id`` at ``reporting_time``.

        With ``preview=True`` nothing is persisted and the result has no
        report id.
        """
        if self.session.get(Warehouse, warehouse_id) is None:
            raise LocationNotFound("warehouse", str(warehouse_id))
        method = ValuationMethod(method) if method is not None else self.default_method
        reporting_time = as_utc(reporting_time)

        self.ensure_no_younger_report(warehouse_id, reporting_time)
        previous = self._latest_report(warehouse_id)

        stock = self.stock.get_warehouse_stock_by_product_as_of(warehouse_id, reporting_time)
        layers = self._carry_over(previous)
        after = as_utc(previous.reporting_time) if previous is not None else None
        for product, layer in self._purchases(warehouse_id, after, reporting_time):
            layers.setdefault(product, []).append(layer)

        products = sorted(
            {p for p, q in stock.items() if q != 0} | set(layers),
            key=lambda p: (str(p.product_id), str(p.product_version_id)),
        )
        valuations: list[tuple[ProductRef, ProductValuation]] = []
        for product in products:
            valuation = value_product(
                stock=stock.get(product, 0),
                layers=layers.get(product, []),
                method=method,
                fallback_price=self._purchase_price(product),
            )
            valuations.append((product, valuation))

        rows = tuple(self._row_view(product, v) for product, v in valuations)
        report_id = None
        if not preview:
            report_id = self._persist(
                warehouse_id, reporting_time, method, previous, valuations, comment
            )

        result = ValuationReportResult(
            report_id=report_id,
            warehouse_id=warehouse_id,
            reporting_time=reporting_time,
            method=method,
            previous_report_id=previous.id if previous is not None else None,
            rows=rows,
            preview=preview,
        )
        logger.info(
            "valuation_report_previewed" if preview else "valuation_report_generated",
            extra={
                "report_id": str(report_id) if report_id else None,
                "warehouse_id": str(warehouse_id),
                "reporting_time": reporting_time.isoformat(),
                "method": method.value,
                "row_count": len(rows),
                "surplus_rows": sum(1 for r in rows if r.surplus_stock > 0),
                "total_valuation_net": str(result.total_valuation_net),
            },
        )
        return result

    def ensure_no_younger_report(self, warehouse_id: UUID, reporting_time: datetime) -> None:
        """Raise when a report at or after ``reporting_time`` exists."""
        younger = self.session.scalar(
            select(ValuationReport.id)
            .where(
                ValuationReport.warehouse_id == warehouse_id,
                ValuationReport.reporting_time >= as_utc(reporting_time),
            )
            .order_by(ValuationReport.reporting_time.desc())
            .limit(1)
        )
        if younger is not None:
            raise ValuationReportOutdated(
                str(warehouse_id), as_utc(reporting_time).isoformat(), str(younger)
            )

    # =========================================================================
    # Reads and deletion
    # =========================================================================

    def get_report(self, report_id: UUID) -> ValuationReportResult:
        report = self.session.get(ValuationReport, report_id)
        if report is None:
            raise ValuationReportNotFound(str(report_id))
        rows = sorted(report.rows, key=lambda r: (str(r.product_id), str(r.product_version_id)))
        return ValuationReportResult(
            report_id=report.id,
            warehouse_id=report.warehouse_id,
            reporting_time=as_utc(report.reporting_time),
            method=ValuationMethod(report.method),
            previous_report_id=report.previous_report_id,
            rows=tuple(self._persisted_row_view(row) for row in rows),
        )

    def delete_report(self, report_id: UUID) -> None:
        """Delete the newest report of its warehouse with its rows and layers."""
        report = self.session.get(ValuationReport, report_id)
        if report is None:
            raise ValuationReportNotFound(str(report_id))
        newest = self._latest_report(report.warehouse_id)
        if newest.id != report.id:
            raise ValuationReportNotDeletable(str(report_id), str(newest.id))

        self.session.delete(report)
        self.session.flush()
        logger.info(
            "valuation_report_deleted",
            extra={"report_id": str(report_id), "warehouse_id": str(report.warehouse_id)},
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _latest_report(self, warehouse_id: UUID) -> ValuationReport | None:
        return self.session.scalar(
            select(ValuationReport)
            .where(ValuationReport.warehouse_id == warehouse_id)
            .order_by(ValuationReport.reporting_time.desc(), ValuationReport.created_at.desc())
            .limit(1)
        )

    def _carry_over(self, previous: ValuationReport | None) -> dict[ProductRef, list[CostLayer]]:
        if previous is None:
            return {}
        carried: dict[ProductRef, list[CostLayer]] = {}
        for row in previous.rows:
            layers = carry_over_layers(
                stock=row.stock,
                valuation_net=row.valuation_net,
                reporting_time=as_utc(previous.reporting_time),
                report_row_id=row.id,
            )
            if layers:
                carried[ProductRef(row.product_id, row.product_version_id)] = layers
        return carried

    def _purchases(
        self,
        warehouse_id: UUID,
        after: datetime | None,
        until: datetime,
    ) -> Iterable[tuple[ProductRef, CostLayer]]:
        """Goods-receipt movements into the warehouse in (after, until]."""
        keys = self.stock.warehouse_location_keys(warehouse_id)
        stmt = (
            select(StockMovement, GoodsReceiptLineItem.unit_price_net)
            .outerjoin(
                GoodsReceiptLineItem,
                (GoodsReceiptLineItem.goods_receipt_id == StockMovement.source_goods_receipt_id)
                & (GoodsReceiptLineItem.product_id == StockMovement.product_id),
            )
            .where(
                StockMovement.source_location_type == LocationKind.GOODS_RECEIPT.value,
                StockMovement.destination_location_key.in_(keys),
                StockMovement.created_at <= until,
            )
            .order_by(StockMovement.created_at, StockMovement.id)
        )
        if after is not None:
            stmt = stmt.where(StockMovement.created_at > after)

        for movement, unit_price in self.session.execute(stmt):
            product = ProductRef(movement.product_id, movement.product_version_id)
            if unit_price is None:
                unit_price = self._purchase_price(product) or Decimal("0")
            yield product, CostLayer(
                layer_type=CostLayerType.PURCHASE,
                quantity=movement.quantity,
                unit_price_net=unit_price,
                purchased_at=as_utc(movement.created_at),
                goods_receipt_id=movement.source_goods_receipt_id,
            )

    def _purchase_price(self, product: ProductRef) -> Decimal | None:
        return self.session.scalar(
            select(Product.purchase_price_net).where(Product.id == product.product_id)
        )

    def _persist(
        self,
        warehouse_id: UUID,
        reporting_time: datetime,
        method: ValuationMethod,
        previous: ValuationReport | None,
        valuations: list[tuple[ProductRef, ProductValuation]],
        comment: str | None,
    ) -> UUID:
        report = ValuationReport(
            warehouse_id=warehouse_id,
            reporting_time=reporting_time,
            method=method.value,
            previous_report_id=previous.id if previous is not None else None,
            comment=comment,
            created_at=self.clock.now(),
        )
        self.session.add(report)
        self.session.flush()

        for product, valuation in valuations:
            row = ValuationReportRow(
                report_id=report.id,
                product_id=product.product_id,
                product_version_id=product.product_version_id,
                stock=valuation.stock,
                valuation_net=valuation.valuation_net,
                average_purchase_price_net=valuation.average_purchase_price_net,
                surplus_stock=valuation.surplus_stock,
                surplus_purchase_price_net=valuation.surplus_purchase_price_net,
                surplus_price_source=(
                    valuation.surplus_price_source.value
                    if valuation.surplus_price_source is not None
                    else None
                ),
            )
            self.session.add(row)
            self.session.flush()
            for sequence, layer in enumerate(self._layer_views(valuation)):
                self.session.add(
                    ValuationCostLayer(
                        row_id=row.id,
                        sequence=sequence,
                        layer_type=layer.layer_type,
                        purchased_at=layer.purchased_at,
                        quantity=layer.quantity,
                        unit_price_net=layer.unit_price_net,
                        quantity_used_for_valuation=layer.quantity_used_for_valuation,
                        goods_receipt_id=layer.goods_receipt_id,
                        carry_over_report_row_id=layer.carry_over_report_row_id,
                    )
                )
        self.session.flush()
        return report.id

    @staticmethod
    def _layer_views(valuation: ProductValuation) -> list[ValuationLayerView]:
        views = [
            ValuationLayerView(
                layer_type=c.layer.layer_type,
                quantity=c.layer.quantity,
                unit_price_net=c.layer.unit_price_net,
                quantity_used_for_valuation=c.quantity_used,
                purchased_at=c.layer.purchased_at,
                goods_receipt_id=c.layer.goods_receipt_id,
                carry_over_report_row_id=c.layer.carry_over_report_row_id,
            )
            for c in valuation.consumptions
        ]
        if valuation.surplus_stock > 0:
            views.append(
                ValuationLayerView(
                    layer_type=CostLayerType.SURPLUS,
                    quantity=valuation.surplus_stock,
                    unit_price_net=valuation.surplus_purchase_price_net,
                    quantity_used_for_valuation=valuation.surplus_stock,
                )
            )
        return views

    def _row_view(self, product: ProductRef, valuation: ProductValuation) -> ValuationRowView:
        return ValuationRowView(
            product=product,
            stock=valuation.stock,
            valuation_net=valuation.valuation_net,
            average_purchase_price_net=valuation.average_purchase_price_net,
            surplus_stock=valuation.surplus_stock,
            surplus_purchase_price_net=valuation.surplus_purchase_price_net,
            surplus_price_source=(
                valuation.surplus_price_source.value
                if valuation.surplus_price_source is not None
                else None
            ),
            layers=tuple(self._layer_views(valuation)),
        )

    @staticmethod
    def _persisted_row_view(row: ValuationReportRow) -> ValuationRowView:
        return ValuationRowView(
            product=ProductRef(row.product_id, row.product_version_id),
            stock=row.stock,
            valuation_net=row.valuation_net,
            average_purchase_price_net=row.average_purchase_price_net,
            surplus_stock=row.surplus_stock,
            surplus_purchase_price_net=row.surplus_purchase_price_net,
            surplus_price_source=row.surplus_price_source,
            layers=tuple(
                ValuationLayerView(
                    layer_type=CostLayerType(layer.layer_type),
                    quantity=layer.quantity,
                    unit_price_net=layer.unit_price_net,
                    quantity_used_for_valuation=layer.quantity_used_for_valuation,
                    purchased_at=as_utc(layer.purchased_at),
                    goods_receipt_id=layer.goods_receipt_id,
                    carry_over_report_row_id=layer.carry_over_report_row_id,
                )
                for layer in row.layers
            ),
        )
