"""
StockLedgerService -- the append-only movement ledger.

Responsibility:
    The single write path for stock.  Validates a MovementRequest, appends
    one immutable StockMovement row, applies the projection delta to both
    locations and processes batch allocations, all inside the caller's
    transaction.

Architecture position:
    Kernel > Services -- imperative shell.  Calls StockProjectionService and
    BatchTrackingService; is called by the transaction runner
    (stock_services.ledger_runner) and by reconciliation (stocktake
    corrections).

Invariants enforced:
    - Movement quantity is a positive integer.
    - Source and destination are validated references and differ.
    - Idempotency: a known movement id with the same payload hash is a
      no-op; a different hash raises MovementPayloadMismatch.
    - The ledger row and both projection deltas commit together or not at
      all (savepoint around every append and every batch).
    - Appends hold shared scope locks so rebuilds of the same products wait.

Failure modes:
    - InvalidMovementQuantity, InvalidLocationReference, LocationNotFound,
      ProductNotFound, InvalidMovementSnapshot: caller bugs, never retried.
    - MovementPayloadMismatch: movement id reused for a different payload.
    - NegativeStockNotAllowed: only under the ``reject`` policy.
    - BatchNotFound / BatchQuantityExceeded: from batch allocation.
    - Database serialization failures propagate to the runner for retry.
"""

import json
from collections.abc import Mapping, Sequence
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_kernel.db.locks import acquire_append_locks
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import (
    AppendOutcome,
    MovementRequest,
    NegativeStockPolicy,
    ProductRef,
)
from stock_kernel.domain.locations import LocationKind, StockLocationReference
from stock_kernel.exceptions import (
    InvalidLocationReference,
    InvalidMovementQuantity,
    InvalidMovementSnapshot,
    LocationNotFound,
    MovementPayloadMismatch,
    NegativeStockNotAllowed,
    ProductNotFound,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.models.movement import StockMovement, StockMovementProcess
from stock_kernel.models.registry import BinLocation, Product, Warehouse
from stock_kernel.services.base import BaseService
from stock_kernel.services.batch_service import BatchTrackingService
from stock_kernel.services.projection_service import StockProjectionService
from stock_kernel.utils.hashing import hash_payload

logger = get_logger("services.ledger")


class StockLedgerService(BaseService[StockMovement]):
    """
    Appends stock movements.

    Contract:
        ``append_movement`` and ``append_movement_batch`` flush within the
        caller's transaction and return movement ids.  The caller commits.

    Guarantees:
        - On any exception nothing of the failed append (or batch) remains
          in the session: ledger rows, projection deltas and batch mappings
          are rolled back to the savepoint.
        - Replaying a request with the same movement id and payload returns
          the same id and changes nothing.

    Non-goals:
        - Retrying on serialization failures (see LedgerTransactionRunner).
        - Reading stock (see StockSelector).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        negative_stock_policy: NegativeStockPolicy | str = NegativeStockPolicy.ALLOW,
    ):
        super().__init__(session, clock)
        self.negative_stock_policy = NegativeStockPolicy(negative_stock_policy)
        self._projection = StockProjectionService(session, self.clock)
        self._batches = BatchTrackingService(session, self.clock)

    # -- public API ---------------------------------------------------------

    def append_movement(self, request: MovementRequest) -> UUID:
        """
        Append one movement.

        Preconditions:
            ``request.source`` / ``request.destination`` are validated
            StockLocationReference values.
        Postconditions:
            The movement row exists, the projection reflects it, and the
            movement id is returned (the existing id for an idempotent
            replay).

        Raises:
            See module docstring.
        """
        savepoint = self.session.begin_nested()
        try:
            acquire_append_locks(self.session, [request.product.product_id])
            outcome = self._append(request)
            savepoint.commit()
        except Exception:
            savepoint.rollback()
            raise
        return outcome.movement_id

    def append_movement_batch(self, requests: Sequence[MovementRequest]) -> list[UUID]:
        """
        Append several movements as one all-or-nothing unit.

        Used when one business operation spans several product lines, so no
        reader can observe a partially applied operation.  Any failure rolls
        back every line of the batch.
        """
        if not requests:
            return []

        savepoint = self.session.begin_nested()
        try:
            acquire_append_locks(self.session, [r.product.product_id for r in requests])
            outcomes = [self._append(request) for request in requests]
            savepoint.commit()
        except Exception:
            savepoint.rollback()
            logger.warning(
                "movement_batch_rolled_back",
                extra={"line_count": len(requests)},
            )
            raise

        logger.info(
            "movement_batch_appended",
            extra={
                "line_count": len(outcomes),
                "duplicates": sum(1 for o in outcomes if o.duplicate),
            },
        )
        return [o.movement_id for o in outcomes]

    def create_movement_process(
        self,
        process_type: str,
        reference: str | None = None,
        user_id: UUID | None = None,
    ) -> UUID:
        """Create a grouping record that movements reference by ``process_id``."""
        process = StockMovementProcess(
            process_type=process_type,
            reference=reference,
            user_id=user_id,
            created_at=self.clock.now(),
        )
        self.session.add(process)
        self.session.flush()
        logger.info(
            "movement_process_created",
            extra={"process_id": str(process.id), "process_type": process_type},
        )
        return process.id

    # -- append pipeline ----------------------------------------------------

    def _append(self, request: MovementRequest) -> AppendOutcome:
        quantity = request.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidMovementQuantity(quantity)

        source, destination = request.source, request.destination
        if source.key == destination.key:
            raise InvalidLocationReference(
                source.kind.value, "source and destination are the same location"
            )

        movement_id = request.movement_id or uuid4()
        payload_hash = hash_payload(request.payload())

        with LogContext.bind(
            movement_id=movement_id,
            actor_id=request.user_id,
            process_id=request.process_id,
        ):
            if request.movement_id is not None:
                existing = self._existing_hash(movement_id)
                if existing is not None:
                    return self._duplicate(movement_id, existing, payload_hash)

            self._require_product(request.product)
            source_snapshot = self._snapshot(source, request.source_snapshot)
            destination_snapshot = self._snapshot(destination, request.destination_snapshot)

            movement = StockMovement(
                id=movement_id,
                product_id=request.product.product_id,
                product_version_id=request.product.product_version_id,
                quantity=quantity,
                source_location_snapshot=source_snapshot,
                destination_location_snapshot=destination_snapshot,
                stock_movement_process_id=request.process_id,
                user_id=request.user_id,
                comment=request.comment,
                payload_hash=payload_hash,
                created_at=self.clock.now(),
                **source.to_columns("source_"),
                **destination.to_columns("destination_"),
            )

            insert_savepoint = self.session.begin_nested()
            try:
                self.session.add(movement)
                self.session.flush()
                insert_savepoint.commit()
            except IntegrityError:
                # Concurrent first insert of the same id
                insert_savepoint.rollback()
                existing = self._existing_hash(movement_id)
                if existing is None:
                    raise
                logger.warning("concurrent_movement_insert_conflict")
                return self._duplicate(movement_id, existing, payload_hash)

            source_quantity = self._apply_projection(request.product, source, destination, quantity)

            if (
                self.negative_stock_policy is NegativeStockPolicy.REJECT
                and source.is_physical
                and source_quantity < 0
            ):
                raise NegativeStockNotAllowed(
                    str(request.product.product_id), source.key, source_quantity
                )

            inferred = self._process_batches(request, movement_id, source_quantity)

            logger.info(
                "movement_appended",
                extra={
                    "product_id": str(request.product.product_id),
                    "quantity": quantity,
                    "source": source.key,
                    "destination": destination.key,
                    "payload_hash": payload_hash,
                },
            )
            return AppendOutcome(movement_id=movement_id, inferred_batches=inferred)

    def _duplicate(self, movement_id: UUID, stored_hash: str, payload_hash: str) -> AppendOutcome:
        if stored_hash != payload_hash:
            logger.warning(
                "movement_rejected_hash_mismatch",
                extra={"expected_hash": stored_hash, "received_hash": payload_hash},
            )
            raise MovementPayloadMismatch(str(movement_id), stored_hash, payload_hash)
        logger.info("movement_duplicate")
        return AppendOutcome(movement_id=movement_id, duplicate=True)

    def _existing_hash(self, movement_id: UUID) -> str | None:
        return self.session.scalar(
            select(StockMovement.payload_hash).where(StockMovement.id == movement_id)
        )

    def _apply_projection(
        self,
        product: ProductRef,
        source: StockLocationReference,
        destination: StockLocationReference,
        quantity: int,
    ) -> int:
        """Apply both deltas in key order; return the source quantity afterwards."""
        deltas = sorted(((source, -quantity), (destination, quantity)), key=lambda d: d[0].key)
        source_quantity = 0
        for location, delta in deltas:
            _, after = self._projection.apply_delta(product, location, delta)
            if location is source:
                source_quantity = after
        return source_quantity

    def _process_batches(
        self,
        request: MovementRequest,
        movement_id: UUID,
        source_quantity: int,
    ) -> tuple[tuple[UUID, int], ...]:
        allocated = 0
        for batch_id, batch_quantity in (request.batches or {}).items():
            self._batches.allocate_batch_to_movement(
                movement_id, batch_id, batch_quantity, request.batch_origin
            )
            allocated += batch_quantity
        return self._batches.infer_batches(
            movement_id, request.quantity - allocated, source_quantity
        )

    # -- validation ---------------------------------------------------------

    def _require_product(self, product: ProductRef) -> Product:
        row = self.session.get(Product, product.product_id)
        if row is None or row.version_id != product.product_version_id:
            raise ProductNotFound(str(product.product_id), str(product.product_version_id))
        return row

    def _require_registry_location(self, location: StockLocationReference) -> Warehouse | BinLocation | None:
        if location.kind is LocationKind.WAREHOUSE:
            row = self.session.get(Warehouse, location.warehouse_id)
        elif location.kind is LocationKind.BIN_LOCATION:
            row = self.session.get(BinLocation, location.bin_location_id)
        else:
            return None
        if row is None:
            raise LocationNotFound(location.kind.value, str(location.identifier))
        return row

    def _snapshot(
        self,
        location: StockLocationReference,
        given: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        """
        Validate a caller-supplied snapshot or generate one.

        Snapshots are free-form JSON objects; the ledger only checks that
        they serialize and are non-empty for non-virtual locations.
        """
        registry_row = self._require_registry_location(location)

        if given is not None:
            if not isinstance(given, Mapping):
                raise InvalidMovementSnapshot(location.key, "snapshot must be a JSON object")
            try:
                json.dumps(dict(given))
            except (TypeError, ValueError) as exc:
                raise InvalidMovementSnapshot(location.key, f"snapshot is not valid JSON: {exc}") from exc
            if not given and not location.is_special:
                raise InvalidMovementSnapshot(
                    location.key, "snapshot of a non-virtual location must not be empty"
                )
            return dict(given)

        if location.is_special:
            return location.describe()
        if registry_row is not None:
            return registry_row.snapshot()
        raise InvalidMovementSnapshot(
            location.key, f"a snapshot is required for {location.kind.value} locations"
        )
