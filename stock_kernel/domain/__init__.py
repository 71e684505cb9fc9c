"""Pure domain values for the stock kernel (no I/O)."""
