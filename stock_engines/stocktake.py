"""
stock_engines.stocktake -- stocktake arithmetic.

Responsibility:
    Reconstruct the stock of a location at a counting time, merge repeated
    counts of the unknown warehouse location, and compute per-product
    summaries (counted vs. expected) for a stocktake.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Inputs are ledger views
    and plain numbers gathered by StocktakingService.

Invariants enforced:
    - Counting-time stock = stock at stocktake start + the net of every
      movement with started_at < created_at <= counted_at.
    - absolute_difference = counted - expected (signed).
    - percentage_difference = absolute_difference / expected * 100, rounded
      to two places; undefined (None) when nothing was expected.

Usage:
    from stock_engines.stocktake import reconstruct_stock_at, summarize_counts

    stock = reconstruct_stock_at(
        start_stock=5, movements=views, location=bin_ref,
        started_at=stocktake.started_at, counted_at=now,
    )
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from stock_kernel.db.types import as_utc
from stock_kernel.domain.dtos import ProductRef, StockMovementView
from stock_kernel.domain.locations import StockLocationReference
from stock_engines.tracer import traced_engine

_PERCENT_PLACES = Decimal("0.01")


@dataclass(frozen=True, slots=True)
class CountedQuantity:
    """One counted product line: what was counted and what the ledger expected."""

    product: ProductRef
    quantity: int
    stock_at_counting: int
    counted_at: datetime


@dataclass(frozen=True, slots=True)
class ProductSummary:
    """Stocktake result for one product across all counting processes."""

    product: ProductRef
    counted_stock: int
    expected_stock: int
    absolute_difference: int
    percentage_difference: Decimal | None
    warehouse_stock: int


@traced_engine("stocktake_reconstruction", "1.0", fingerprint_fields=("start_stock",))
def reconstruct_stock_at(
    *,
    start_stock: int,
    movements: Iterable[StockMovementView],
    location: StockLocationReference,
    started_at: datetime,
    counted_at: datetime,
) -> int:
    """
    Stock of ``location`` at ``counted_at`` given its stock at ``started_at``.

    Movements outside the window (started_at, counted_at] are ignored, so
    callers may pass a wider range.
    """
    lower, upper = as_utc(started_at), as_utc(counted_at)
    stock = start_stock
    for movement in movements:
        created_at = as_utc(movement.created_at)
        if lower < created_at <= upper:
            stock += movement.signed_quantity_at(location)
    return stock


def merge_counts(previous: CountedQuantity, latest: CountedQuantity) -> CountedQuantity:
    """
    Merge a repeated count of the same product at the unknown location.

    The most recent count replaces the earlier one together with the
    stock snapshot taken at its counting time.
    """
    if latest.product != previous.product:
        raise ValueError("Only counts of the same product can be merged")
    if as_utc(latest.counted_at) < as_utc(previous.counted_at):
        return previous
    return latest


def percentage_difference(counted: int, expected: int) -> Decimal | None:
    """Signed deviation of ``counted`` from ``expected`` in percent."""
    if expected == 0:
        return None
    ratio = Decimal(counted - expected) / Decimal(expected) * 100
    return ratio.quantize(_PERCENT_PLACES, rounding=ROUND_HALF_UP)


@traced_engine("stocktake_summary", "1.0")
def summarize_counts(
    *,
    counts: Iterable[CountedQuantity],
    warehouse_stock: Mapping[ProductRef, int],
) -> list[ProductSummary]:
    """
    Aggregate counted lines into one summary per product.

    ``warehouse_stock`` holds the current stock of the warehouse per
    product; products missing from it read as 0.  Summaries are ordered by
    product id so that persisted rows are deterministic.
    """
    counted: dict[ProductRef, int] = {}
    expected: dict[ProductRef, int] = {}
    for count in counts:
        counted[count.product] = counted.get(count.product, 0) + count.quantity
        expected[count.product] = expected.get(count.product, 0) + count.stock_at_counting

    summaries = []
    for product in sorted(counted, key=lambda p: (str(p.product_id), str(p.product_version_id))):
        summaries.append(
            ProductSummary(
                product=product,
                counted_stock=counted[product],
                expected_stock=expected[product],
                absolute_difference=counted[product] - expected[product],
                percentage_difference=percentage_difference(counted[product], expected[product]),
                warehouse_stock=warehouse_stock.get(product, 0),
            )
        )
    return summaries


def correction_delta(counted: int, stock_at_counting: int) -> int:
    """Signed quantity the counted location must change by (0: no correction)."""
    return counted - stock_at_counting
