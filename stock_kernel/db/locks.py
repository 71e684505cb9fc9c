"""
Module: stock_kernel.db.locks
Responsibility: Scope locks that serialize projection rebuilds against
    movement appends.
Architecture position: Kernel > DB.  Used by the ledger and projection
    services.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - A rebuild holds an EXCLUSIVE lock over its scope (the whole projection
      or a set of products) for the duration of its transaction.
    - An append holds SHARED locks over the global scope and each product it
      touches, so appends never block each other but wait for a rebuild.
    - Locks are always taken in sorted key order to avoid lock-order
      deadlocks between multi-product batches.

On PostgreSQL these are transaction-scoped advisory locks
(pg_advisory_xact_lock / pg_advisory_xact_lock_shared), released at commit
or rollback.  SQLite serializes writers at the database level, so the
functions are no-ops there.
"""

import hashlib
from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.orm import Session

from stock_kernel.logging_config import get_logger

logger = get_logger("db.locks")

GLOBAL_PROJECTION_LOCK_KEY = 7_301_001


def product_lock_key(product_id: UUID) -> int:
    """Stable signed 64-bit advisory lock key for a product."""
    digest = hashlib.blake2b(str(product_id).encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def _is_postgres(session: Session) -> bool:
    return session.get_bind().dialect.name == "postgresql"


def _lock(session: Session, key: int, shared: bool) -> None:
    fn = "pg_advisory_xact_lock_shared" if shared else "pg_advisory_xact_lock"
    session.execute(text(f"SELECT {fn}(:key)"), {"key": key})


def acquire_append_locks(session: Session, product_ids: Iterable[UUID]) -> None:
    """Shared locks for an append touching ``product_ids``."""
    if not _is_postgres(session):
        return
    _lock(session, GLOBAL_PROJECTION_LOCK_KEY, shared=True)
    for key in sorted({product_lock_key(pid) for pid in product_ids}):
        _lock(session, key, shared=True)


def acquire_rebuild_locks(session: Session, product_ids: Iterable[UUID] | None) -> None:
    """
    Exclusive scope lock for a rebuild.

    ``product_ids=None`` locks the whole projection.
    """
    if not _is_postgres(session):
        logger.debug("rebuild_lock_skipped", extra={"dialect": session.get_bind().dialect.name})
        return
    if product_ids is None:
        _lock(session, GLOBAL_PROJECTION_LOCK_KEY, shared=False)
        return
    _lock(session, GLOBAL_PROJECTION_LOCK_KEY, shared=True)
    for key in sorted({product_lock_key(pid) for pid in product_ids}):
        _lock(session, key, shared=False)
