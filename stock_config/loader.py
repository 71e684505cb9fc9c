"""
Configuration loader (``stock_config.loader``).

Responsibility
--------------
Reads the YAML configuration file and parses it into the frozen
dataclasses of ``stock_config.schema``.  Runtime callers go through
``stock_config.get_active_config()``.

Invariants enforced
-------------------
* Unknown enum values and non-positive retry settings raise ``ValueError``.
* Absent sections fall back to the schema defaults.
* ``compute_checksum`` is a deterministic SHA-256 over canonical JSON.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from stock_config.schema import (
    NEGATIVE_STOCK_POLICIES,
    VALUATION_METHODS,
    LedgerConfig,
    LedgerSection,
    RetryConfig,
    StocktakingSection,
    ValuationSection,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a YAML file and return its top-level mapping.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration root must be a mapping, got {type(data).__name__}")
    return data


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Configuration section '{name}' must be a mapping")
    return value


def _choice(value: Any, allowed: tuple[str, ...], name: str) -> str:
    if value not in allowed:
        raise ValueError(f"{name} must be one of {', '.join(allowed)}; got {value!r}")
    return value


def parse_retry(data: dict[str, Any]) -> RetryConfig:
    defaults = RetryConfig()
    max_attempts = data.get("max_attempts", defaults.max_attempts)
    backoff = data.get("backoff_seconds", defaults.backoff_seconds)
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
        raise ValueError(f"retry.max_attempts must be a positive integer; got {max_attempts!r}")
    if isinstance(backoff, bool) or not isinstance(backoff, (int, float)) or backoff < 0:
        raise ValueError(f"retry.backoff_seconds must be a non-negative number; got {backoff!r}")
    return RetryConfig(max_attempts=max_attempts, backoff_seconds=float(backoff))


def parse_config(data: dict[str, Any]) -> LedgerConfig:
    """
    Parse a configuration mapping into a ``LedgerConfig``.

    Raises:
        ValueError: on unknown policies or methods, or invalid retry values.
    """
    ledger = _section(data, "ledger")
    valuation = _section(data, "valuation")
    stocktaking = _section(data, "stocktaking")

    apply_corrections = stocktaking.get("apply_corrections", True)
    if not isinstance(apply_corrections, bool):
        raise ValueError(
            f"stocktaking.apply_corrections must be a boolean; got {apply_corrections!r}"
        )

    return LedgerConfig(
        ledger=LedgerSection(
            negative_stock_policy=_choice(
                ledger.get("negative_stock_policy", "allow"),
                NEGATIVE_STOCK_POLICIES,
                "ledger.negative_stock_policy",
            ),
            retry=parse_retry(_section(ledger, "retry")),
        ),
        valuation=ValuationSection(
            method=_choice(
                valuation.get("method", "most_recent_first"),
                VALUATION_METHODS,
                "valuation.method",
            ),
        ),
        stocktaking=StocktakingSection(apply_corrections=apply_corrections),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
