"""
stock_config -- single public entrypoint for ledger configuration.

Responsibility:
    ``get_active_config()`` is the only way to obtain configuration at
    runtime.  It reads a YAML file (``sets/default.yaml`` unless a path is
    given), validates it and returns a frozen ``LedgerConfig``.

Architecture position:
    Configuration -- sits above ``stock_kernel`` and beside
    ``stock_services``.  The kernel MUST NEVER import from this package;
    services receive plain values (policy, attempts, method).

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- unknown enum values or invalid retry settings.

Audit relevance:
    Every successful call emits a ``STOCK_CONFIG_TRACE`` log entry with the
    source path, checksum and the effective values.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path

from stock_config.loader import compute_checksum, load_yaml_file, parse_config
from stock_config.schema import (
    LedgerConfig,
    LedgerSection,
    RetryConfig,
    StocktakingSection,
    ValuationSection,
)

_logger = logging.getLogger("stock_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(config_path: Path | str | None = None) -> LedgerConfig:
    """
    Load, validate and return the active configuration.

    Args:
        config_path: Override path to a YAML file.  Defaults to
            ``stock_config/sets/default.yaml``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If validation fails.
    """
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    data = load_yaml_file(path)
    config = replace(parse_config(data), source_path=str(path), checksum=compute_checksum(data))

    _logger.info(
        "STOCK_CONFIG_TRACE",
        extra={
            "trace_type": "STOCK_CONFIG_TRACE",
            "source_path": config.source_path,
            "checksum": config.checksum,
            "negative_stock_policy": config.ledger.negative_stock_policy,
            "max_attempts": config.ledger.retry.max_attempts,
            "valuation_method": config.valuation.method,
            "apply_corrections": config.stocktaking.apply_corrections,
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "LedgerConfig",
    "LedgerSection",
    "RetryConfig",
    "StocktakingSection",
    "ValuationSection",
    "get_active_config",
]
