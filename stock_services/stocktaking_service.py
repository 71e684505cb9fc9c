"""
stock_services.stocktaking_service -- stocktake lifecycle.

Responsibility:
    Creates stocktakes over a warehouse, records counting processes with a
    ledger-reconstructed stock snapshot per counted item, and completes a
    stocktake: per-product summaries plus correction movements against the
    ``stock_correction`` special location.

Architecture position:
    Services -- orchestration over kernel services, selectors and the
    pure stocktake engine.  Flushes only; the caller (or the transaction
    runner) commits.

Invariants enforced:
    - Status machine active -> completed; completed is terminal.
    - At most one counting process per bin location per stocktake and one
      for the warehouse's unknown location.  Repeated counts at the unknown
      location merge, the most recent count winning.
    - Counting a bin location counts every other product with stock there
      as 0.
    - The stock snapshot of an item is the stock of its location at its
      counting time, reconstructed from the ledger.
    - Corrections go through the ledger; nothing else here writes stock.

Failure modes:
    - StocktakeNotFound, ReconciliationStocktakeNotActive.
    - LocationNotFound for an unknown bin location or a bin location of
      another warehouse.
    - DuplicateCountedProduct, CountingProcessAlreadyExists.
    - ProductNotFound for an unknown product version.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stock_engines.stocktake import (
    CountedQuantity,
    ProductSummary,
    correction_delta,
    merge_counts,
    reconstruct_stock_at,
    summarize_counts,
)
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import MovementRequest, NegativeStockPolicy, ProductRef
from stock_kernel.domain.locations import SpecialStockLocation, StockLocationReference
from stock_kernel.exceptions import (
    CountingProcessAlreadyExists,
    DuplicateCountedProduct,
    LocationNotFound,
    ProductNotFound,
    ReconciliationStocktakeNotActive,
    StocktakeNotFound,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.registry import BinLocation, Product, Warehouse
from stock_kernel.models.stocktake import (
    Stocktake,
    StocktakeCountingProcess,
    StocktakeCountingProcessItem,
    StocktakeProductSummary,
    StocktakeStatus,
)
from stock_kernel.selectors.stock_selector import StockSelector
from stock_kernel.services.ledger_service import StockLedgerService

logger = get_logger("services.stocktaking")

CORRECTION_PROCESS_TYPE = "stocktake_correction"


@dataclass(frozen=True)
class StocktakeView:
    id: UUID
    warehouse_id: UUID
    title: str
    number: str
    status: StocktakeStatus
    started_at: datetime
    completed_at: datetime | None = None


@dataclass(frozen=True)
class CountingProcessView:
    id: UUID
    stocktake_id: UUID
    bin_location_id: UUID | None
    number: str
    items: tuple[CountedQuantity, ...]


@dataclass(frozen=True)
class StocktakeCompletion:
    """Outcome of completing a stocktake."""

    stocktake_id: UUID
    summaries: tuple[ProductSummary, ...]
    correction_process_id: UUID | None
    correction_movement_ids: tuple[UUID, ...]


class StocktakingService:
    """
    Stocktake operations.

    Contract:
        Receives a Session and a Clock.  Reads stock through StockSelector
        and writes corrections through StockLedgerService.

    Non-goals:
        - Counting UI concerns (counting lists, scanning).
        - Valuation of differences.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        negative_stock_policy: NegativeStockPolicy | str = NegativeStockPolicy.ALLOW,
    ):
        self.session = session
        self.ledger = StockLedgerService(session, clock, negative_stock_policy)
        self.clock = self.ledger.clock
        self.stock = StockSelector(session)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_stocktake(
        self,
        warehouse_id: UUID,
        title: str,
        number: str | None = None,
    ) -> StocktakeView:
        """Open an active stocktake over ``warehouse_id`` starting now."""
        if self.session.get(Warehouse, warehouse_id) is None:
            raise LocationNotFound("warehouse", str(warehouse_id))

        if number is None:
            existing = self.session.scalar(select(func.count()).select_from(Stocktake)) or 0
            number = f"ST-{existing + 1:05d}"

        stocktake = Stocktake(
            warehouse_id=warehouse_id,
            title=title,
            number=number,
            status=StocktakeStatus.ACTIVE,
            started_at=self.clock.now(),
        )
        self.session.add(stocktake)
        self.session.flush()

        logger.info(
            "stocktake_created",
            extra={
                "stocktake_id": str(stocktake.id),
                "warehouse_id": str(warehouse_id),
                "number": number,
            },
        )
        return self._to_view(stocktake)

    def list_active_stocktakes(self, warehouse_id: UUID | None = None) -> list[StocktakeView]:
        """Active stocktakes, oldest first."""
        stmt = select(Stocktake).where(Stocktake.status == StocktakeStatus.ACTIVE)
        if warehouse_id is not None:
            stmt = stmt.where(Stocktake.warehouse_id == warehouse_id)
        stmt = stmt.order_by(Stocktake.started_at, Stocktake.number)
        return [self._to_view(s) for s in self.session.scalars(stmt)]

    # =========================================================================
    # Counting
    # =========================================================================

    def record_counting_process(
        self,
        stocktake_id: UUID,
        bin_location_id: UUID | None,
        items: Sequence[tuple[ProductRef, int]],
        user_id: UUID | None = None,
    ) -> CountingProcessView:
        """
        Record the count of one bin location (or, with ``None``, of the
        warehouse's unknown location).

        Raises:
            See module docstring.
        """
        stocktake = self._require_active(stocktake_id)
        location = self._counted_location(stocktake, bin_location_id)
        counts = self._validate_items(items)

        process = self._find_process(stocktake.id, bin_location_id)
        if process is not None and bin_location_id is not None:
            raise CountingProcessAlreadyExists(str(stocktake.id), str(bin_location_id))

        counted_at = self.clock.now()
        if bin_location_id is not None:
            for record in self.stock.get_stock_at_location(location):
                if record.product not in counts:
                    counts[record.product] = 0

        if process is None:
            process = StocktakeCountingProcess(
                stocktake_id=stocktake.id,
                bin_location_id=bin_location_id,
                bin_location_snapshot=(
                    self.session.get(BinLocation, bin_location_id).snapshot()
                    if bin_location_id is not None
                    else None
                ),
                number=f"{stocktake.number}-{self._process_count(stocktake.id) + 1}",
                user_id=user_id,
                created_at=counted_at,
            )
            self.session.add(process)
            self.session.flush()

        existing_items = {
            ProductRef(item.product_id, item.product_version_id): item
            for item in process.items
        }
        merged = 0
        for product, quantity in counts.items():
            latest = CountedQuantity(
                product=product,
                quantity=quantity,
                stock_at_counting=self._stock_at(product, location, stocktake.started_at, counted_at),
                counted_at=counted_at,
            )
            item = existing_items.get(product)
            if item is None:
                self.session.add(
                    StocktakeCountingProcessItem(
                        counting_process_id=process.id,
                        product_id=product.product_id,
                        product_version_id=product.product_version_id,
                        quantity=latest.quantity,
                        stock_at_counting=latest.stock_at_counting,
                        counted_at=latest.counted_at,
                    )
                )
                continue

            result = merge_counts(self._to_counted(item), latest)
            item.quantity = result.quantity
            item.stock_at_counting = result.stock_at_counting
            item.counted_at = result.counted_at
            merged += 1

        self.session.flush()
        self.session.refresh(process)

        logger.info(
            "counting_process_recorded",
            extra={
                "stocktake_id": str(stocktake.id),
                "counting_process_id": str(process.id),
                "location": location.key,
                "item_count": len(counts),
                "merged_items": merged,
            },
        )
        return CountingProcessView(
            id=process.id,
            stocktake_id=stocktake.id,
            bin_location_id=bin_location_id,
            number=process.number,
            items=tuple(self._to_counted(item) for item in process.items),
        )

    def get_uncounted_products_in_stock_location(
        self,
        stocktake_id: UUID,
        bin_location_id: UUID | None,
    ) -> list[ProductRef]:
        """Products with stock at the location that this stocktake has not counted there."""
        stocktake = self._require(stocktake_id)
        location = self._counted_location(stocktake, bin_location_id)

        counted: set[ProductRef] = set()
        process = self._find_process(stocktake.id, bin_location_id)
        if process is not None:
            counted = {ProductRef(i.product_id, i.product_version_id) for i in process.items}

        return [
            record.product
            for record in self.stock.get_stock_at_location(location)
            if record.product not in counted
        ]

    # =========================================================================
    # Completion
    # =========================================================================

    def complete_stocktake(
        self,
        stocktake_id: UUID,
        user_id: UUID | None = None,
        apply_corrections: bool = True,
    ) -> StocktakeCompletion:
        """
        Complete an active stocktake.

        Persists one summary per counted product and, unless
        ``apply_corrections`` is False, appends one correction movement per
        item whose count differs from its stock snapshot.  Items of bin
        locations deleted since counting get no correction.
        """
        stocktake = self._require_active(stocktake_id)

        counts: list[CountedQuantity] = []
        corrections: list[tuple[StockLocationReference, CountedQuantity]] = []
        processes = self.session.scalars(
            select(StocktakeCountingProcess)
            .where(StocktakeCountingProcess.stocktake_id == stocktake.id)
            .order_by(StocktakeCountingProcess.created_at, StocktakeCountingProcess.number)
        ).all()
        for process in processes:
            location = self._process_location(stocktake, process)
            for item in process.items:
                count = self._to_counted(item)
                counts.append(count)
                if location is not None:
                    corrections.append((location, count))

        warehouse_stock = {
            count.product: self.stock.get_stock_aggregated_across_warehouse_locations(
                count.product, stocktake.warehouse_id
            )
            for count in counts
        }
        summaries = summarize_counts(counts=counts, warehouse_stock=warehouse_stock)
        for summary in summaries:
            self.session.add(
                StocktakeProductSummary(
                    stocktake_id=stocktake.id,
                    product_id=summary.product.product_id,
                    product_version_id=summary.product.product_version_id,
                    counted_stock=summary.counted_stock,
                    expected_stock=summary.expected_stock,
                    absolute_difference=summary.absolute_difference,
                    percentage_difference=summary.percentage_difference,
                    warehouse_stock=summary.warehouse_stock,
                )
            )

        process_id = None
        movement_ids: list[UUID] = []
        if apply_corrections:
            requests = self._correction_requests(stocktake, corrections, user_id)
            if requests:
                process_id = self.ledger.create_movement_process(
                    CORRECTION_PROCESS_TYPE, reference=stocktake.number, user_id=user_id
                )
                requests = [replace(r, process_id=process_id) for r in requests]
                movement_ids = self.ledger.append_movement_batch(requests)

        stocktake.status = StocktakeStatus.COMPLETED
        stocktake.completed_at = self.clock.now()
        stocktake.completed_by_id = user_id
        stocktake.correction_process_id = process_id
        self.session.flush()

        logger.info(
            "stocktake_completed",
            extra={
                "stocktake_id": str(stocktake.id),
                "product_count": len(summaries),
                "correction_count": len(movement_ids),
                "correction_process_id": str(process_id) if process_id else None,
            },
        )
        return StocktakeCompletion(
            stocktake_id=stocktake.id,
            summaries=tuple(summaries),
            correction_process_id=process_id,
            correction_movement_ids=tuple(movement_ids),
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _correction_requests(
        self,
        stocktake: Stocktake,
        corrections: Iterable[tuple[StockLocationReference, CountedQuantity]],
        user_id: UUID | None,
    ) -> list[MovementRequest]:
        correction = StockLocationReference.special(SpecialStockLocation.STOCK_CORRECTION)
        requests = []
        for location, count in corrections:
            delta = correction_delta(count.quantity, count.stock_at_counting)
            if delta == 0:
                continue
            source, destination = (correction, location) if delta > 0 else (location, correction)
            requests.append(
                MovementRequest(
                    product=count.product,
                    quantity=abs(delta),
                    source=source,
                    destination=destination,
                    user_id=user_id,
                    comment=f"Stocktake {stocktake.number}",
                )
            )
        return requests

    def _stock_at(
        self,
        product: ProductRef,
        location: StockLocationReference,
        started_at: datetime,
        counted_at: datetime,
    ) -> int:
        return reconstruct_stock_at(
            start_stock=self.stock.get_stock_as_of(product, location, started_at),
            movements=self.stock.get_movements_for_product(product, from_=started_at, to=counted_at),
            location=location,
            started_at=started_at,
            counted_at=counted_at,
        )

    def _validate_items(self, items: Sequence[tuple[ProductRef, int]]) -> dict[ProductRef, int]:
        counts: dict[ProductRef, int] = {}
        for product, quantity in items:
            if product in counts:
                raise DuplicateCountedProduct(str(product.product_id))
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
                raise ValueError(
                    f"Counted quantity must be a non-negative integer, got {quantity!r}"
                )
            row = self.session.get(Product, product.product_id)
            if row is None or row.version_id != product.product_version_id:
                raise ProductNotFound(str(product.product_id), str(product.product_version_id))
            counts[product] = quantity
        return counts

    def _counted_location(
        self,
        stocktake: Stocktake,
        bin_location_id: UUID | None,
    ) -> StockLocationReference:
        if bin_location_id is None:
            return StockLocationReference.warehouse(stocktake.warehouse_id)
        bin_location = self.session.get(BinLocation, bin_location_id)
        if bin_location is None or bin_location.warehouse_id != stocktake.warehouse_id:
            raise LocationNotFound("bin_location", str(bin_location_id))
        return StockLocationReference.bin_location(bin_location_id)

    @staticmethod
    def _process_location(
        stocktake: Stocktake,
        process: StocktakeCountingProcess,
    ) -> StockLocationReference | None:
        """Location a process counted; None when its bin location was deleted."""
        if process.bin_location_id is not None:
            return StockLocationReference.bin_location(process.bin_location_id)
        if process.is_unknown_location:
            return StockLocationReference.warehouse(stocktake.warehouse_id)
        return None

    def _find_process(
        self,
        stocktake_id: UUID,
        bin_location_id: UUID | None,
    ) -> StocktakeCountingProcess | None:
        stmt = select(StocktakeCountingProcess).where(
            StocktakeCountingProcess.stocktake_id == stocktake_id
        )
        if bin_location_id is None:
            stmt = stmt.where(
                StocktakeCountingProcess.bin_location_id.is_(None),
                StocktakeCountingProcess.bin_location_snapshot.is_(None),
            )
        else:
            stmt = stmt.where(StocktakeCountingProcess.bin_location_id == bin_location_id)
        return self.session.scalar(stmt)

    def _process_count(self, stocktake_id: UUID) -> int:
        return self.session.scalar(
            select(func.count())
            .select_from(StocktakeCountingProcess)
            .where(StocktakeCountingProcess.stocktake_id == stocktake_id)
        ) or 0

    def _require(self, stocktake_id: UUID) -> Stocktake:
        stocktake = self.session.get(Stocktake, stocktake_id)
        if stocktake is None:
            raise StocktakeNotFound(str(stocktake_id))
        return stocktake

    def _require_active(self, stocktake_id: UUID) -> Stocktake:
        stocktake = self._require(stocktake_id)
        if not stocktake.is_active:
            raise ReconciliationStocktakeNotActive(str(stocktake_id), stocktake.title)
        return stocktake

    @staticmethod
    def _to_counted(item: StocktakeCountingProcessItem) -> CountedQuantity:
        return CountedQuantity(
            product=ProductRef(item.product_id, item.product_version_id),
            quantity=item.quantity,
            stock_at_counting=item.stock_at_counting,
            counted_at=item.counted_at,
        )

    @staticmethod
    def _to_view(stocktake: Stocktake) -> StocktakeView:
        return StocktakeView(
            id=stocktake.id,
            warehouse_id=stocktake.warehouse_id,
            title=stocktake.title,
            number=stocktake.number,
            status=StocktakeStatus(stocktake.status),
            started_at=stocktake.started_at,
            completed_at=stocktake.completed_at,
        )
