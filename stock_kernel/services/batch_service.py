"""
BatchTrackingService -- lot bookkeeping alongside stock movements.

Responsibility:
    Resolves batch identities, records which batches travelled with a
    movement, and keeps the per-stock-record batch quantities
    (BatchStockMapping) in step with the projection.

Architecture position:
    Kernel > Services.  Called by StockLedgerService inside the append
    transaction; callable directly for allocations made later in the same
    transaction.

Invariants enforced:
    - Identity: a batch is addressed by its number, or by ``bbd:<iso date>``
      when it only has a best-before date.  Resolving the same identity
      twice yields the same row.
    - The batch quantities mapped to a stock record never add up to more
      than the record's quantity.
    - Batch stock at a physical source never goes negative through a
      user-entered allocation.
    - Only physical locations carry batch stock; mapping rows with
      quantity 0 are deleted.

Failure modes:
    - InvalidBatchIdentity: neither number nor best-before date given.
    - BatchNotFound: unknown batch, or a batch of another product.
    - BatchQuantityExceeded: any of the quantity rules above.
"""

from datetime import date
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_kernel.db.upsert import increment
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.dtos import BatchOrigin, ProductRef
from stock_kernel.domain.locations import StockLocationReference
from stock_kernel.exceptions import (
    BatchNotFound,
    BatchQuantityExceeded,
    InvalidBatchIdentity,
    InvalidMovementQuantity,
    MovementNotFound,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.batch import Batch, BatchStockMapping, BatchStockMovementMapping
from stock_kernel.models.movement import StockMovement
from stock_kernel.models.stock import StockRecord
from stock_kernel.services.base import BaseService

logger = get_logger("services.batch")


def batch_identity_key(number: str | None, best_before_date: date | None) -> str | None:
    """Canonical identity of a batch, or None when it has none."""
    if number:
        return number
    if best_before_date is not None:
        return f"bbd:{best_before_date.isoformat()}"
    return None


class BatchTrackingService(BaseService[Batch]):
    """
    Batch allocation and inference.

    Contract:
        Every method runs inside the caller's transaction and only flushes.
        Allocations must be made in the same transaction as the movement
        they refer to, after the projection delta has been applied.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)

    # -- identity -----------------------------------------------------------

    def resolve_batch(
        self,
        product: ProductRef,
        number: str | None = None,
        best_before_date: date | None = None,
        production_date: date | None = None,
    ) -> UUID:
        """
        Return the id of the batch with this identity, creating it if needed.

        A concurrent creation of the same identity is resolved by re-reading
        after the unique constraint fires.
        """
        identity_key = batch_identity_key(number, best_before_date)
        if identity_key is None:
            raise InvalidBatchIdentity(str(product.product_id))

        existing = self._find_batch(product.product_id, identity_key)
        if existing is not None:
            return existing

        batch = Batch(
            product_id=product.product_id,
            identity_key=identity_key,
            number=number or None,
            best_before_date=best_before_date,
            production_date=production_date,
        )
        savepoint = self.session.begin_nested()
        try:
            self.session.add(batch)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.debug(
                "batch_identity_race_resolved",
                extra={"product_id": str(product.product_id), "identity_key": identity_key},
            )
            existing = self._find_batch(product.product_id, identity_key)
            if existing is None:
                raise
            return existing

        logger.info(
            "batch_created",
            extra={
                "batch_id": str(batch.id),
                "product_id": str(product.product_id),
                "identity_key": identity_key,
            },
        )
        return batch.id

    def _find_batch(self, product_id: UUID, identity_key: str) -> UUID | None:
        return self.session.scalar(
            select(Batch.id).where(
                Batch.product_id == product_id,
                Batch.identity_key == identity_key,
            )
        )

    # -- allocation ---------------------------------------------------------

    def allocate_batch_to_movement(
        self,
        movement_id: UUID,
        batch_id: UUID,
        quantity: int,
        origin: BatchOrigin = BatchOrigin.USER_ENTERED,
    ) -> None:
        """
        Record that ``quantity`` units of ``batch_id`` travelled with a movement.

        Moves the batch quantity from the source record to the destination
        record (physical sides only) and checks the quantity rules.

        A user-entered allocation for a movement that already went through
        inference first reverts the system-generated mappings, then infers
        again for whatever part of the movement is still unallocated.
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidMovementQuantity(quantity)

        movement = self.session.get(StockMovement, movement_id)
        if movement is None:
            raise MovementNotFound(str(movement_id))
        batch = self.session.get(Batch, batch_id)
        if batch is None or batch.product_id != movement.product_id:
            raise BatchNotFound(str(batch_id))

        allocated = self.session.scalar(
            select(func.coalesce(func.sum(BatchStockMovementMapping.source_quantity), 0)).where(
                BatchStockMovementMapping.stock_movement_id == movement_id,
                BatchStockMovementMapping.origin == BatchOrigin.USER_ENTERED,
            )
        )
        if origin is BatchOrigin.USER_ENTERED and allocated + quantity > movement.quantity:
            raise BatchQuantityExceeded(
                str(batch_id), None, allocated + quantity, movement.quantity
            )

        source = movement.source
        destination = movement.destination
        product = movement.product

        savepoint = self.session.begin_nested()
        try:
            reinfer = origin is BatchOrigin.USER_ENTERED and self._revert_inference(movement)

            if source.is_physical:
                remaining = self._adjust(product, source, batch_id, -quantity)
                if remaining < 0:
                    raise BatchQuantityExceeded(
                        str(batch_id), source.key, quantity, remaining + quantity
                    )

            if destination.is_physical:
                self._adjust(product, destination, batch_id, quantity)
                self._check_record_capacity(product, destination, batch_id, quantity)

            self._record_movement_mapping(movement_id, batch_id, quantity, quantity, origin)
            unallocated = movement.quantity - allocated - quantity
            if reinfer and unallocated > 0:
                self.infer_batches(
                    movement_id, unallocated, self._record_quantity(product, source)
                )
            savepoint.commit()
        except Exception:
            savepoint.rollback()
            raise

        logger.info(
            "batch_allocated",
            extra={
                "movement_id": str(movement_id),
                "batch_id": str(batch_id),
                "quantity": quantity,
                "origin": origin.value,
            },
        )

    def infer_batches(
        self,
        movement_id: UUID,
        unallocated: int,
        source_quantity_after: int,
    ) -> tuple[tuple[UUID, int], ...]:
        """
        Conservative batch inference for the unallocated part of a movement.

        Without batch information any batch at the source may have left, so
        each is reduced by ``min(batch quantity, unallocated)``.  At the
        destination only what certainly moved is added: the part of the
        unallocated quantity that the other stock at the source could not
        have covered.

        Returns:
            ``(batch_id, guaranteed quantity)`` pairs recorded as
            system-generated mappings.
        """
        movement = self.session.get(StockMovement, movement_id)
        source = movement.source
        if unallocated <= 0 or not source.is_physical:
            return ()

        product = movement.product
        destination = movement.destination
        record_id = self._record_id(product, source)
        if record_id is None:
            return ()

        source_mappings = self.session.execute(
            select(BatchStockMapping.batch_id, BatchStockMapping.quantity)
            .where(
                BatchStockMapping.stock_record_id == record_id,
                BatchStockMapping.quantity > 0,
            )
            .order_by(BatchStockMapping.batch_id)
        ).all()

        quantity_before = source_quantity_after + unallocated
        inferred: list[tuple[UUID, int]] = []
        for batch_id, batch_quantity in source_mappings:
            removed = min(batch_quantity, unallocated)
            occupied_by_others = quantity_before - batch_quantity
            guaranteed = min(max(0, unallocated - occupied_by_others), batch_quantity)

            self._adjust(product, source, batch_id, -removed)
            if guaranteed > 0 and destination.is_physical:
                self._adjust(product, destination, batch_id, guaranteed)
            self._record_movement_mapping(
                movement_id, batch_id, guaranteed, removed, BatchOrigin.SYSTEM_GENERATED
            )
            if guaranteed > 0:
                inferred.append((batch_id, guaranteed))

        if source_mappings:
            logger.info(
                "batches_inferred",
                extra={
                    "movement_id": str(movement_id),
                    "unallocated": unallocated,
                    "batches_reduced": len(source_mappings),
                    "batches_moved": len(inferred),
                },
            )
        return tuple(inferred)

    # -- internals ----------------------------------------------------------

    def _revert_inference(self, movement: StockMovement) -> bool:
        """Undo the system-generated mappings of a movement; True if there were any."""
        mappings = self.session.scalars(
            select(BatchStockMovementMapping).where(
                BatchStockMovementMapping.stock_movement_id == movement.id,
                BatchStockMovementMapping.origin == BatchOrigin.SYSTEM_GENERATED,
            )
        ).all()
        if not mappings:
            return False

        product = movement.product
        for mapping in mappings:
            if movement.source.is_physical and mapping.source_quantity > 0:
                self._adjust(product, movement.source, mapping.batch_id, mapping.source_quantity)
            if movement.destination.is_physical and mapping.quantity > 0:
                left = self._adjust(
                    product, movement.destination, mapping.batch_id, -mapping.quantity
                )
                if left < 0:
                    # inferred quantity already left the destination
                    raise BatchQuantityExceeded(
                        str(mapping.batch_id),
                        movement.destination.key,
                        mapping.quantity,
                        left + mapping.quantity,
                    )
            self.session.delete(mapping)
        self.session.flush()

        logger.info(
            "batch_inference_reverted",
            extra={"movement_id": str(movement.id), "mappings_reverted": len(mappings)},
        )
        return True

    def _record_quantity(self, product: ProductRef, location: StockLocationReference) -> int:
        quantity = self.session.scalar(
            select(StockRecord.quantity).where(
                StockRecord.product_id == product.product_id,
                StockRecord.product_version_id == product.product_version_id,
                StockRecord.location_key == location.key,
            )
        )
        return quantity or 0

    def _record_id(self, product: ProductRef, location: StockLocationReference) -> UUID | None:
        return self.session.scalar(
            select(StockRecord.id).where(
                StockRecord.product_id == product.product_id,
                StockRecord.product_version_id == product.product_version_id,
                StockRecord.location_key == location.key,
            )
        )

    def _adjust(
        self,
        product: ProductRef,
        location: StockLocationReference,
        batch_id: UUID,
        delta: int,
    ) -> int:
        """Add ``delta`` to the batch quantity at ``location``; returns the result."""
        record_id = self._record_id(product, location)
        if record_id is None:
            raise BatchQuantityExceeded(str(batch_id), location.key, abs(delta), 0)

        _, quantity = increment(
            self.session,
            BatchStockMapping,
            {
                "id": uuid4(),
                "stock_record_id": record_id,
                "batch_id": batch_id,
                "quantity": delta,
                "updated_at": self.clock.now(),
            },
            ["stock_record_id", "batch_id"],
        )
        if quantity == 0:
            self.session.execute(
                delete(BatchStockMapping)
                .where(
                    BatchStockMapping.stock_record_id == record_id,
                    BatchStockMapping.batch_id == batch_id,
                )
                .execution_options(synchronize_session=False)
            )
        return quantity

    def _check_record_capacity(
        self,
        product: ProductRef,
        location: StockLocationReference,
        batch_id: UUID,
        requested: int,
    ) -> None:
        record_id, record_quantity = self.session.execute(
            select(StockRecord.id, StockRecord.quantity).where(
                StockRecord.product_id == product.product_id,
                StockRecord.product_version_id == product.product_version_id,
                StockRecord.location_key == location.key,
            )
        ).one()
        batched = self.session.scalar(
            select(func.coalesce(func.sum(BatchStockMapping.quantity), 0)).where(
                BatchStockMapping.stock_record_id == record_id,
                BatchStockMapping.quantity > 0,
            )
        )
        if batched > record_quantity:
            raise BatchQuantityExceeded(
                str(batch_id), location.key, requested, requested - (batched - record_quantity)
            )

    def _record_movement_mapping(
        self,
        movement_id: UUID,
        batch_id: UUID,
        quantity: int,
        source_quantity: int,
        origin: BatchOrigin,
    ) -> None:
        existing = self.session.scalar(
            select(BatchStockMovementMapping).where(
                BatchStockMovementMapping.stock_movement_id == movement_id,
                BatchStockMovementMapping.batch_id == batch_id,
                BatchStockMovementMapping.origin == origin,
            )
        )
        if existing is not None:
            existing.quantity += quantity
            existing.source_quantity += source_quantity
        else:
            self.session.add(
                BatchStockMovementMapping(
                    stock_movement_id=movement_id,
                    batch_id=batch_id,
                    quantity=quantity,
                    source_quantity=source_quantity,
                    origin=origin,
                    created_at=self.clock.now(),
                )
            )
        self.session.flush()
