"""
Stock Kernel

An append-only stock ledger with:
- Typed, validated stock locations
- Idempotent movement appends
- A rebuildable per-(product, location) stock projection
- Point-in-time stock reconstruction
- Batch/lot bookkeeping
"""

__version__ = "0.1.0"
