"""
Module: stock_engines
Responsibility:
    Re-exports the pure calculation engines used by the reconciliation
    services: stocktake arithmetic and the valuation cost-layer walk.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May import stock_kernel domain values and helpers.
    MUST NOT import stock_services or stock_config.

Invariants enforced:
    - Purity: engines never read the clock or a session; timestamps and
      ledger views are passed in.
    - Decimal-only arithmetic for prices and values.

Usage:
    from stock_engines import value_product, ValuationMethod
    from stock_engines import reconstruct_stock_at, summarize_counts
"""

from stock_engines.stocktake import (
    CountedQuantity,
    ProductSummary,
    correction_delta,
    merge_counts,
    percentage_difference,
    reconstruct_stock_at,
    summarize_counts,
)
from stock_engines.tracer import compute_input_fingerprint, traced_engine
from stock_engines.valuation import (
    CostLayer,
    LayerConsumption,
    PriceSource,
    ProductValuation,
    ValuationMethod,
    carry_over_layers,
    order_layers,
    value_product,
    weighted_average_price,
)

__all__ = [
    "CountedQuantity",
    "ProductSummary",
    "correction_delta",
    "merge_counts",
    "percentage_difference",
    "reconstruct_stock_at",
    "summarize_counts",
    "compute_input_fingerprint",
    "traced_engine",
    "CostLayer",
    "LayerConsumption",
    "PriceSource",
    "ProductValuation",
    "ValuationMethod",
    "carry_over_layers",
    "order_layers",
    "value_product",
    "weighted_average_price",
]
