"""Selectors for the stock kernel (read side)."""

from stock_kernel.selectors.batch_selector import BatchSelector
from stock_kernel.selectors.stock_selector import StockSelector

__all__ = [
    "BatchSelector",
    "StockSelector",
]
