"""Services for the stock kernel (write side)."""

from stock_kernel.services.batch_service import BatchTrackingService
from stock_kernel.services.ledger_service import StockLedgerService
from stock_kernel.services.projection_service import StockProjectionService

__all__ = [
    "BatchTrackingService",
    "StockLedgerService",
    "StockProjectionService",
]
