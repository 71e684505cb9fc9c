"""ORM models for the stock ledger."""

from stock_kernel.models.batch import Batch, BatchStockMapping, BatchStockMovementMapping
from stock_kernel.models.movement import StockMovement, StockMovementProcess
from stock_kernel.models.registry import (
    BinLocation,
    GoodsReceipt,
    GoodsReceiptLineItem,
    Product,
    Warehouse,
)
from stock_kernel.models.stock import StockRecord
from stock_kernel.models.stocktake import (
    Stocktake,
    StocktakeCountingProcess,
    StocktakeCountingProcessItem,
    StocktakeProductSummary,
    StocktakeStatus,
)
from stock_kernel.models.valuation import (
    CostLayerType,
    ValuationCostLayer,
    ValuationReport,
    ValuationReportRow,
)

__all__ = [
    "Product",
    "Warehouse",
    "BinLocation",
    "GoodsReceipt",
    "GoodsReceiptLineItem",
    "StockMovementProcess",
    "StockMovement",
    "StockRecord",
    "Stocktake",
    "StocktakeStatus",
    "StocktakeCountingProcess",
    "StocktakeCountingProcessItem",
    "StocktakeProductSummary",
    "ValuationReport",
    "ValuationReportRow",
    "ValuationCostLayer",
    "CostLayerType",
    "Batch",
    "BatchStockMapping",
    "BatchStockMovementMapping",
]
