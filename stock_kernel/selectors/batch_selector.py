"""
Module: stock_kernel.selectors.batch_selector
Responsibility: Read-only batch stock queries.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Batch stock is physical stock: only mappings at physical locations
      exist, so summing every mapping of a batch gives its physical stock.
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stock_kernel.domain.dtos import BatchQuantity, ProductRef
from stock_kernel.domain.locations import StockLocationReference
from stock_kernel.models.batch import Batch, BatchStockMapping, BatchStockMovementMapping
from stock_kernel.models.stock import StockRecord
from stock_kernel.selectors.base import BaseSelector


class BatchSelector(BaseSelector[Batch]):
    """Batch quantities per batch, per stock record and per movement."""

    def __init__(self, session: Session):
        super().__init__(session)

    def get_batch_stock(self, batch_id: UUID) -> int:
        """Physical stock of a batch across all physical locations."""
        total = self.session.scalar(
            select(func.coalesce(func.sum(BatchStockMapping.quantity), 0)).where(
                BatchStockMapping.batch_id == batch_id
            )
        )
        return int(total or 0)

    def get_batch_quantities(self, stock_record_id: UUID) -> list[BatchQuantity]:
        """Batch breakdown of one stock record, ordered by batch identity."""
        rows = self.session.execute(
            select(
                BatchStockMapping.batch_id,
                BatchStockMapping.quantity,
                Batch.number,
                Batch.best_before_date,
            )
            .join(Batch, Batch.id == BatchStockMapping.batch_id)
            .where(BatchStockMapping.stock_record_id == stock_record_id)
            .order_by(Batch.identity_key)
        ).all()
        return [
            BatchQuantity(
                batch_id=batch_id,
                quantity=quantity,
                number=number,
                best_before_date=best_before_date,
            )
            for batch_id, quantity, number, best_before_date in rows
        ]

    def get_batch_quantities_at(
        self,
        product: ProductRef,
        location: StockLocationReference,
    ) -> list[BatchQuantity]:
        """Batch breakdown of the stock record of ``product`` at ``location``."""
        record_id = self.session.scalar(
            select(StockRecord.id).where(
                StockRecord.product_id == product.product_id,
                StockRecord.product_version_id == product.product_version_id,
                StockRecord.location_key == location.key,
            )
        )
        if record_id is None:
            return []
        return self.get_batch_quantities(record_id)

    def get_movement_batches(self, movement_id: UUID) -> dict[UUID, int]:
        """Batch quantities that arrived at the destination of a movement."""
        rows = self.session.execute(
            select(
                BatchStockMovementMapping.batch_id,
                func.sum(BatchStockMovementMapping.quantity),
            )
            .where(BatchStockMovementMapping.stock_movement_id == movement_id)
            .group_by(BatchStockMovementMapping.batch_id)
        ).all()
        return {batch_id: int(quantity) for batch_id, quantity in rows if quantity}
