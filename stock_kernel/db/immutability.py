"""
ORM-level immutability enforcement (layer 1 of 2).

Layer 1 (this module) catches modifications made through SQLAlchemy before
SQL reaches the database.  Layer 2 (db/sql/02_movement_immutability.sql,
PostgreSQL only) catches raw SQL and bulk statements against the ledger.

    session.flush()
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
    [before_delete] --> _check_*_delete() --------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Protected entities:

Entity                    | When immutable                | Operations blocked
--------------------------|-------------------------------|-------------------
StockMovement             | always                        | UPDATE, DELETE
Stocktake                 | once status = completed       | UPDATE
StocktakeProductSummary   | always                        | UPDATE
ValuationReportRow        | always                        | UPDATE
ValuationCostLayer        | always                        | UPDATE

Summaries, report rows and cost layers disappear only together with their
parent (stocktake or newest valuation report), so DELETE stays allowed for
them.  Bulk ``session.execute(update(...))`` statements bypass mapper
events; on PostgreSQL the ledger triggers still apply.

Usage:

    from stock_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

Tests that must bypass the listeners call unregister_immutability_listeners()
and re-register afterwards.
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from stock_kernel.exceptions import ImmutabilityViolationError
from stock_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _blocked(entity_type: str, target, operation: str, reason: str, field: str | None = None):
    extra = {
        "entity_type": entity_type,
        "entity_id": str(target.id),
        "operation": operation,
    }
    if field is not None:
        extra["field"] = field
    logger.error("immutability_violation_blocked", extra=extra)
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _changed_fields(target) -> list[str]:
    return [attr.key for attr in inspect(target).attrs if attr.history.has_changes()]


def _check_stock_movement_immutability(mapper, connection, target):
    """Ledger rows are append-only."""
    changed = _changed_fields(target)
    if not changed:
        return
    raise _blocked(
        "StockMovement", target, "UPDATE",
        f"Stock movements are immutable (attempted to change {', '.join(changed)})",
        field=changed[0],
    )


def _check_stock_movement_delete(mapper, connection, target):
    raise _blocked(
        "StockMovement", target, "DELETE",
        "Stock movements cannot be deleted; append a compensating movement",
    )


def _check_stocktake_immutability(mapper, connection, target):
    """
    Block changes to a completed stocktake.

    The completion itself (active -> completed, with completed_at and the
    correction process) is allowed; anything after it is not.
    """
    from stock_kernel.models.stocktake import StocktakeStatus

    status_history = get_history(target, "status")
    if status_history.deleted:
        was_completed = status_history.deleted[0] in (
            StocktakeStatus.COMPLETED, StocktakeStatus.COMPLETED.value,
        )
    elif not status_history.added:
        was_completed = target.status in (
            StocktakeStatus.COMPLETED, StocktakeStatus.COMPLETED.value,
        )
    else:
        was_completed = False

    if not was_completed:
        return

    changed = _changed_fields(target)
    if changed:
        raise _blocked(
            "Stocktake", target, "UPDATE",
            f"Cannot modify field '{changed[0]}' on a completed stocktake",
            field=changed[0],
        )


def _check_summary_immutability(mapper, connection, target):
    if _changed_fields(target):
        raise _blocked(
            "StocktakeProductSummary", target, "UPDATE",
            "Stocktake summaries are written once on completion",
        )


def _check_valuation_row_immutability(mapper, connection, target):
    if _changed_fields(target):
        raise _blocked(
            "ValuationReportRow", target, "UPDATE",
            "Persisted valuation rows are immutable; delete and regenerate the report",
        )


def _check_cost_layer_immutability(mapper, connection, target):
    if _changed_fields(target):
        raise _blocked(
            "ValuationCostLayer", target, "UPDATE",
            "Persisted cost layers are immutable; delete and regenerate the report",
        )


def _listeners():
    from stock_kernel.models.movement import StockMovement
    from stock_kernel.models.stocktake import Stocktake, StocktakeProductSummary
    from stock_kernel.models.valuation import ValuationCostLayer, ValuationReportRow

    return (
        (StockMovement, "before_update", _check_stock_movement_immutability),
        (StockMovement, "before_delete", _check_stock_movement_delete),
        (Stocktake, "before_update", _check_stocktake_immutability),
        (StocktakeProductSummary, "before_update", _check_summary_immutability),
        (ValuationReportRow, "before_update", _check_valuation_row_immutability),
        (ValuationCostLayer, "before_update", _check_cost_layer_immutability),
    )


def register_immutability_listeners():
    """
    Register all immutability listeners.

    Idempotent: a listener that is already registered is not added twice.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove the immutability listeners.

    WARNING: only for tests that intentionally violate immutability.
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
