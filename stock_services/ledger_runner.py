"""
stock_services.ledger_runner -- transactional runner with bounded retry.

Responsibility:
    Owns the transaction around ledger writes: opens a session, runs the
    unit of work, commits, and retries the whole unit when the database
    reports a transient conflict.

Architecture position:
    Services -- the only place in the package that commits.  Kernel
    services called from here flush and never commit.

Invariants enforced:
    - The session is always rolled back on failure and always closed.
    - Only transient conflicts are retried: PostgreSQL serialization
      failure (40001), deadlock (40P01), lock not available (55P03) and
      SQLite "database is locked".  Everything else propagates at once.
    - Attempts are bounded; exhausting them raises TransientConflict.

Failure modes:
    - TransientConflict after ``max_attempts`` transient failures.
    - Any StockLedgerError from the unit of work, unchanged.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from typing import TypeVar
from uuid import UUID

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import MovementRequest, NegativeStockPolicy, RebuildResult
from stock_kernel.exceptions import TransientConflict
from stock_kernel.logging_config import get_logger
from stock_kernel.services.ledger_service import StockLedgerService
from stock_kernel.services.projection_service import StockProjectionService

logger = get_logger("services.ledger_runner")

T = TypeVar("T")

TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03"})


def is_transient(exc: BaseException) -> bool:
    """True for database errors that a fresh attempt may not hit again."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    if getattr(orig, "pgcode", None) in TRANSIENT_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()


class LedgerTransactionRunner:
    """
    Runs units of work against fresh sessions with retry.

    Contract:
        ``run(fn)`` calls ``fn(session)`` inside a new transaction and
        returns its result after commit.  ``fn`` may be called several
        times, so it must not have side effects outside the session.

    Guarantees:
        - A returned value means the transaction committed.
        - On TransientConflict nothing was written.

    Non-goals:
        - Retrying domain errors; those are caller bugs or business
          rejections and are raised unchanged.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        clock: Clock | None = None,
        max_attempts: int = 5,
        backoff_seconds: float = 0.05,
        negative_stock_policy: NegativeStockPolicy | str = NegativeStockPolicy.ALLOW,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self._session_factory = session_factory
        self.clock = clock or SystemClock()
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.negative_stock_policy = NegativeStockPolicy(negative_stock_policy)
        self._sleep = sleep

    @classmethod
    def from_config(cls, session_factory, config, clock: Clock | None = None) -> LedgerTransactionRunner:
        """Build a runner from a ``stock_config.LedgerConfig``."""
        return cls(
            session_factory,
            clock=clock,
            max_attempts=config.ledger.retry.max_attempts,
            backoff_seconds=config.ledger.retry.backoff_seconds,
            negative_stock_policy=config.ledger.negative_stock_policy,
        )

    def run(self, fn: Callable[[Session], T], operation: str = "transaction") -> T:
        """Run ``fn`` in a transaction, retrying transient conflicts."""
        last_error: DBAPIError | None = None
        for attempt in range(1, self.max_attempts + 1):
            session = self._session_factory()
            try:
                result = fn(session)
                session.commit()
                if attempt > 1:
                    logger.info(
                        "transient_conflict_resolved",
                        extra={"operation": operation, "attempt": attempt},
                    )
                return result
            except DBAPIError as exc:
                session.rollback()
                if not is_transient(exc):
                    raise
                last_error = exc
                logger.warning(
                    "transient_conflict_retry",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "reason": str(exc.orig),
                    },
                )
                if attempt < self.max_attempts:
                    self._sleep(self.backoff_seconds * attempt)
            except BaseException:
                session.rollback()
                raise
            finally:
                session.close()

        logger.error(
            "transient_conflict_exhausted",
            extra={"operation": operation, "attempts": self.max_attempts},
        )
        raise TransientConflict(self.max_attempts, str(last_error.orig)) from last_error

    # -- convenience --------------------------------------------------------

    def _ledger(self, session: Session) -> StockLedgerService:
        return StockLedgerService(session, self.clock, self.negative_stock_policy)

    def append_movement(self, request: MovementRequest) -> UUID:
        return self.run(
            lambda session: self._ledger(session).append_movement(request),
            operation="append_movement",
        )

    def append_movement_batch(self, requests: Sequence[MovementRequest]) -> list[UUID]:
        requests = list(requests)
        return self.run(
            lambda session: self._ledger(session).append_movement_batch(requests),
            operation="append_movement_batch",
        )

    def rebuild_projection(self, product_ids: Iterable[UUID] | None = None) -> RebuildResult:
        scope = list(product_ids) if product_ids is not None else None
        return self.run(
            lambda session: StockProjectionService(session, self.clock).rebuild_from_ledger(scope),
            operation="rebuild_projection",
        )
