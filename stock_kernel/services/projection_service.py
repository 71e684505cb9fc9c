"""
StockProjectionService -- maintains the materialized current-stock view.

Responsibility:
    Keeps ``stock_records`` equal to the ledger sum per (product, location):

        quantity(p, loc) == sum(in-movements) - sum(out-movements)

    incrementally (``apply_delta``, called by the ledger for every append)
    and from scratch (``rebuild_from_ledger``, the oracle for the invariant
    above and the repair path after a backfill).

Architecture position:
    Kernel > Services -- imperative shell.  Called by StockLedgerService
    inside the append transaction and by the transaction runner for
    rebuilds.

Invariants enforced:
    - Increments are one atomic INSERT ... ON CONFLICT DO UPDATE statement
      (db/upsert.py), never read-then-write.
    - A rebuild holds the exclusive scope lock (db/locks.py) so no append on
      the same products interleaves with the delete/replay.
    - Batch stock mappings are rebuilt together with the rows they point at.

Failure modes:
    - Any error propagates to the caller's transaction; nothing here
      commits, so a failed rebuild leaves the previous projection intact
      after rollback.
"""

from collections.abc import Iterable
from uuid import UUID, uuid4

from sqlalchemy import delete, insert, select
from sqlalchemy.orm import Session

from stock_kernel.db.locks import acquire_rebuild_locks
from stock_kernel.db.types import as_utc
from stock_kernel.db.upsert import increment
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import ProductRef, RebuildResult
from stock_kernel.domain.locations import StockLocationReference
from stock_kernel.logging_config import get_logger
from stock_kernel.models.batch import BatchStockMapping, BatchStockMovementMapping
from stock_kernel.models.movement import StockMovement
from stock_kernel.models.stock import StockRecord
from stock_kernel.services.base import BaseService

logger = get_logger("services.projection")

_REPLAY_CHUNK = 1000

_UNIQUE_KEY = ["product_id", "product_version_id", "location_key"]


class StockProjectionService(BaseService[StockRecord]):
    """
    Writes to the stock projection.

    Contract:
        ``apply_delta`` adds a signed delta to one (product, location) row,
        creating it when absent, and returns the resulting row id and
        quantity.  ``rebuild_from_ledger`` recomputes a scope of rows from
        the movement ledger.

    Non-goals:
        - Reads go through StockSelector.
        - Negative-stock policy is the ledger's concern; the projection
          stores whatever the ledger implies.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)

    def apply_delta(
        self,
        product: ProductRef,
        location: StockLocationReference,
        delta: int,
    ) -> tuple[UUID, int]:
        """
        Atomically add ``delta`` to the row of ``(product, location)``.

        Returns:
            ``(stock_record_id, quantity_after)``.
        """
        values = {
            "id": uuid4(),
            "product_id": product.product_id,
            "product_version_id": product.product_version_id,
            "quantity": delta,
            "updated_at": self.clock.now(),
            **location.to_columns(),
        }
        record_id, quantity = increment(self.session, StockRecord, values, _UNIQUE_KEY)
        logger.debug(
            "projection_delta_applied",
            extra={
                "product_id": str(product.product_id),
                "location_key": location.key,
                "delta": delta,
                "quantity": quantity,
            },
        )
        return record_id, quantity

    def rebuild_from_ledger(self, product_ids: Iterable[UUID] | None = None) -> RebuildResult:
        """
        Recompute the projection from the movement ledger.

        Preconditions:
            Runs inside a transaction owned by the caller.
        Postconditions:
            Every row in scope equals the ledger sum; rows for locations that
            a movement touched exist even when their quantity is 0.  Batch
            stock mappings in scope are replayed from the movement mappings.

        Args:
            product_ids: Restrict the rebuild to these products.  ``None``
                rebuilds everything under the global lock.
        """
        scope = tuple(sorted(set(product_ids), key=str)) if product_ids is not None else None
        acquire_rebuild_locks(self.session, scope)
        self.session.flush()

        record_scope = select(StockRecord.id)
        if scope is not None:
            record_scope = record_scope.where(StockRecord.product_id.in_(scope))
        self.session.execute(
            delete(BatchStockMapping)
            .where(BatchStockMapping.stock_record_id.in_(record_scope))
            .execution_options(synchronize_session=False)
        )
        record_delete = delete(StockRecord)
        if scope is not None:
            record_delete = record_delete.where(StockRecord.product_id.in_(scope))
        self.session.execute(record_delete.execution_options(synchronize_session=False))
        self.session.expire_all()

        rows: dict[tuple[UUID, UUID, str], dict] = {}
        movements = select(StockMovement).order_by(StockMovement.created_at, StockMovement.id)
        if scope is not None:
            movements = movements.where(StockMovement.product_id.in_(scope))

        replayed = 0
        for movement in self.session.scalars(movements.execution_options(yield_per=_REPLAY_CHUNK)):
            replayed += 1
            for location, delta in (
                (movement.source, -movement.quantity),
                (movement.destination, movement.quantity),
            ):
                key = (movement.product_id, movement.product_version_id, location.key)
                row = rows.get(key)
                if row is None:
                    row = {
                        "id": uuid4(),
                        "product_id": movement.product_id,
                        "product_version_id": movement.product_version_id,
                        "quantity": 0,
                        **location.to_columns(),
                    }
                    rows[key] = row
                row["quantity"] += delta
                row["updated_at"] = as_utc(movement.created_at)

        if rows:
            self.session.execute(insert(StockRecord), list(rows.values()))

        batch_rows = self._replay_batch_mappings(scope, rows)
        if batch_rows:
            self.session.execute(insert(BatchStockMapping), batch_rows)
        self.session.flush()

        result = RebuildResult(
            product_scope=scope,
            movements_replayed=replayed,
            rows_written=len(rows),
            batch_mappings_written=len(batch_rows),
        )
        logger.info(
            "projection_rebuilt",
            extra={
                "scope": "all" if scope is None else [str(p) for p in scope],
                "movements_replayed": replayed,
                "rows_written": result.rows_written,
                "batch_mappings_written": result.batch_mappings_written,
            },
        )
        return result

    def _replay_batch_mappings(
        self,
        scope: tuple[UUID, ...] | None,
        rows: dict[tuple[UUID, UUID, str], dict],
    ) -> list[dict]:
        """Sum movement mappings per (record, batch); drop zero results."""
        stmt = (
            select(BatchStockMovementMapping, StockMovement)
            .join(StockMovement, StockMovement.id == BatchStockMovementMapping.stock_movement_id)
        )
        if scope is not None:
            stmt = stmt.where(StockMovement.product_id.in_(scope))

        totals: dict[tuple[UUID, UUID], int] = {}
        for mapping, movement in self.session.execute(stmt):
            for location, delta in (
                (movement.source, -mapping.source_quantity),
                (movement.destination, mapping.quantity),
            ):
                if not location.is_physical or delta == 0:
                    continue
                record = rows[(movement.product_id, movement.product_version_id, location.key)]
                key = (record["id"], mapping.batch_id)
                totals[key] = totals.get(key, 0) + delta

        now = self.clock.now()
        return [
            {
                "id": uuid4(),
                "stock_record_id": record_id,
                "batch_id": batch_id,
                "quantity": quantity,
                "updated_at": now,
            }
            for (record_id, batch_id), quantity in totals.items()
            if quantity != 0
        ]
