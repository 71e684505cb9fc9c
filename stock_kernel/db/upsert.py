"""
Module: stock_kernel.db.upsert
Responsibility: Dialect-specific INSERT ... ON CONFLICT DO UPDATE for the
    counters the ledger maintains (stock records, batch stock mappings).
Architecture position: Kernel > DB.  Used by services/projection_service.py
    and services/batch_service.py.

Invariants enforced:
    - Counters are changed with a single atomic statement.  Never
      read-then-write: two concurrent deltas on the same row both land.
"""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def dialect_insert(session: Session, model: Any):
    """Return the ``insert()`` construct of the session's dialect for ``model``."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Atomic upsert is not implemented for dialect {dialect!r}")


def increment(
    session: Session,
    model: Any,
    values: dict[str, Any],
    conflict_columns: list[str],
    counter: str = "quantity",
    touch: str | None = "updated_at",
):
    """
    Insert ``values`` or add ``values[counter]`` to the existing row.

    Returns the ``(id, counter)`` row after the statement.
    """
    stmt = dialect_insert(session, model).values(**values)
    set_ = {counter: getattr(model, counter) + getattr(stmt.excluded, counter)}
    if touch is not None:
        set_[touch] = getattr(stmt.excluded, touch)
    stmt = stmt.on_conflict_do_update(index_elements=conflict_columns, set_=set_)
    stmt = stmt.returning(model.id, getattr(model, counter))
    return session.execute(stmt).one()
