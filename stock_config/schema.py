"""
LedgerConfig schema.

Typed, frozen view of the YAML configuration set.  The loader parses YAML
into these types; services receive the plain values they need, never the
YAML itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field

NEGATIVE_STOCK_POLICIES = ("allow", "reject")
VALUATION_METHODS = ("most_recent_first", "oldest_first", "weighted_average")


@dataclass(frozen=True)
class RetryConfig:
    """Retry budget of the ledger transaction runner."""

    max_attempts: int = 5
    backoff_seconds: float = 0.05


@dataclass(frozen=True)
class LedgerSection:
    negative_stock_policy: str = "allow"
    retry: RetryConfig = field(default_factory=RetryConfig)


@dataclass(frozen=True)
class ValuationSection:
    method: str = "most_recent_first"


@dataclass(frozen=True)
class StocktakingSection:
    apply_corrections: bool = True


@dataclass(frozen=True)
class LedgerConfig:
    """The complete runtime configuration."""

    ledger: LedgerSection = field(default_factory=LedgerSection)
    valuation: ValuationSection = field(default_factory=ValuationSection)
    stocktaking: StocktakingSection = field(default_factory=StocktakingSection)
    source_path: str | None = None
    checksum: str = ""
