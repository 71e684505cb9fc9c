"""
stock_services -- orchestration over the stock kernel and engines.

Responsibility:
    Transaction ownership with retry (LedgerTransactionRunner) and the
    reconciliation services: stocktaking and valuation reports.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        stock_services/ -> stock_engines/, stock_kernel/, stock_config/  (allowed)
        stock_kernel/   -> stock_services/                                (FORBIDDEN)
        stock_engines/  -> stock_services/                                (FORBIDDEN)
"""

from stock_kernel.logging_config import get_logger

logger = get_logger("services")

from stock_services.ledger_runner import LedgerTransactionRunner, is_transient
from stock_services.stocktaking_service import (
    CountingProcessView,
    StocktakeCompletion,
    StocktakeView,
    StocktakingService,
)
from stock_services.valuation_service import (
    StockValuationService,
    ValuationLayerView,
    ValuationReportResult,
    ValuationRowView,
)

__all__ = [
    "CountingProcessView",
    "LedgerTransactionRunner",
    "StockValuationService",
    "StocktakeCompletion",
    "StocktakeView",
    "StocktakingService",
    "ValuationLayerView",
    "ValuationReportResult",
    "ValuationRowView",
    "is_transient",
]
