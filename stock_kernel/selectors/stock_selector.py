"""
Module: stock_kernel.selectors.stock_selector
Responsibility: Read-only stock queries: current stock from the projection,
    and point-in-time stock reconstructed from the movement ledger.
Architecture position: Kernel > Selectors.  May import from models/,
    domain/ and selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - Current stock comes from stock_records; historical stock is always a
      ledger sum, never the projection.
    - Ledger range bounds are inclusive (created_at <= as_of); the
      half-open ``get_net_movement_between`` excludes its lower bound so
      consecutive windows never double count.
    - Returns DTOs or ints, never ORM instances.

Failure modes:
    - Absent rows read as 0; unknown products are not an error here.
"""

from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from stock_kernel.db.types import as_utc
from stock_kernel.domain.dtos import ProductRef, StockMovementView, StockRecordView
from stock_kernel.domain.locations import StockLocationReference
from stock_kernel.models.movement import StockMovement
from stock_kernel.models.registry import BinLocation
from stock_kernel.models.stock import StockRecord
from stock_kernel.selectors.base import BaseSelector

_RECORD_COLUMNS = (
    StockRecord.product_id,
    StockRecord.product_version_id,
    StockRecord.location_type,
    StockRecord.warehouse_id,
    StockRecord.bin_location_id,
    StockRecord.order_id,
    StockRecord.return_order_id,
    StockRecord.supplier_order_id,
    StockRecord.goods_receipt_id,
    StockRecord.stock_container_id,
    StockRecord.special_stock_location,
    StockRecord.quantity,
)


def _net_quantity(keys: list[str]):
    """SUM of +quantity into ``keys`` and -quantity out of ``keys``."""
    return func.coalesce(
        func.sum(
            case((StockMovement.destination_location_key.in_(keys), StockMovement.quantity), else_=0)
            - case((StockMovement.source_location_key.in_(keys), StockMovement.quantity), else_=0)
        ),
        0,
    )


def _touches(keys: list[str]):
    return or_(
        StockMovement.destination_location_key.in_(keys),
        StockMovement.source_location_key.in_(keys),
    )


class StockSelector(BaseSelector[StockRecord]):
    """
    Stock queries over the projection and the ledger.

    Contract:
        Read-only.  Every method accepts a ProductRef; location arguments
        are validated StockLocationReference values.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    # -- projection ---------------------------------------------------------

    def get_stock(self, product: ProductRef, location: StockLocationReference) -> int:
        """Current quantity of ``product`` at ``location`` (0 when absent)."""
        quantity = self.session.scalar(
            select(StockRecord.quantity).where(
                StockRecord.product_id == product.product_id,
                StockRecord.product_version_id == product.product_version_id,
                StockRecord.location_key == location.key,
            )
        )
        return quantity or 0

    def get_stock_aggregated_across_warehouse_locations(
        self, product: ProductRef, warehouse_id: UUID
    ) -> int:
        """
        Stock in a warehouse: its unknown-location bucket plus every bin.

        Equals the sum of ``get_stock`` over the warehouse reference and each
        of its bin location references.
        """
        bins = select(BinLocation.id).where(BinLocation.warehouse_id == warehouse_id)
        total = self.session.scalar(
            select(func.coalesce(func.sum(StockRecord.quantity), 0)).where(
                StockRecord.product_id == product.product_id,
                StockRecord.product_version_id == product.product_version_id,
                or_(
                    StockRecord.location_key == StockLocationReference.warehouse(warehouse_id).key,
                    StockRecord.bin_location_id.in_(bins),
                ),
            )
        )
        return int(total or 0)

    def get_stock_records(self, product: ProductRef) -> list[StockRecordView]:
        """Every projection row of ``product``, ordered by location key."""
        rows = self.session.execute(
            select(*_RECORD_COLUMNS)
            .where(
                StockRecord.product_id == product.product_id,
                StockRecord.product_version_id == product.product_version_id,
            )
            .order_by(StockRecord.location_key)
        ).all()
        return [self._to_record_view(row) for row in rows]

    def get_stock_at_location(self, location: StockLocationReference) -> list[StockRecordView]:
        """Projection rows with non-zero quantity at ``location``."""
        rows = self.session.execute(
            select(*_RECORD_COLUMNS)
            .where(
                StockRecord.location_key == location.key,
                StockRecord.quantity != 0,
            )
            .order_by(StockRecord.product_id)
        ).all()
        return [self._to_record_view(row) for row in rows]

    # -- ledger reconstruction ----------------------------------------------

    def get_stock_as_of(
        self,
        product: ProductRef,
        location: StockLocationReference,
        as_of: datetime,
    ) -> int:
        """Ledger sum for ``location`` over movements with created_at <= as_of."""
        return self._net(product, [location.key], until=as_of)

    def get_warehouse_stock_as_of(
        self,
        product: ProductRef,
        warehouse_id: UUID,
        as_of: datetime,
    ) -> int:
        """Ledger sum over the warehouse bucket and its bins at ``as_of``."""
        return self._net(product, self.warehouse_location_keys(warehouse_id), until=as_of)

    def get_net_movement_between(
        self,
        product: ProductRef,
        location: StockLocationReference,
        after: datetime,
        until: datetime,
    ) -> int:
        """Net quantity moved into ``location`` in the window (after, until]."""
        return self._net(product, [location.key], after=after, until=until)

    def get_warehouse_stock_by_product_as_of(
        self,
        warehouse_id: UUID,
        as_of: datetime,
    ) -> dict[ProductRef, int]:
        """Ledger-reconstructed warehouse stock of every product that ever moved there."""
        keys = self.warehouse_location_keys(warehouse_id)
        rows = self.session.execute(
            select(
                StockMovement.product_id,
                StockMovement.product_version_id,
                _net_quantity(keys),
            )
            .where(_touches(keys), StockMovement.created_at <= as_utc(as_of))
            .group_by(StockMovement.product_id, StockMovement.product_version_id)
        ).all()
        return {
            ProductRef(product_id, version_id): int(quantity)
            for product_id, version_id, quantity in rows
        }

    def get_movements_for_product(
        self,
        product: ProductRef,
        from_: datetime | None = None,
        to: datetime | None = None,
    ) -> list[StockMovementView]:
        """Ledger rows of ``product`` with from_ <= created_at <= to, oldest first."""
        stmt = select(StockMovement).where(
            StockMovement.product_id == product.product_id,
            StockMovement.product_version_id == product.product_version_id,
        )
        if from_ is not None:
            stmt = stmt.where(StockMovement.created_at >= as_utc(from_))
        if to is not None:
            stmt = stmt.where(StockMovement.created_at <= as_utc(to))
        stmt = stmt.order_by(StockMovement.created_at, StockMovement.id)
        return [self.to_movement_view(m) for m in self.session.scalars(stmt)]

    def warehouse_location_keys(self, warehouse_id: UUID) -> list[str]:
        """Location keys of a warehouse bucket and all of its bin locations."""
        bin_ids: Iterable[UUID] = self.session.scalars(
            select(BinLocation.id).where(BinLocation.warehouse_id == warehouse_id)
        )
        return [StockLocationReference.warehouse(warehouse_id).key] + [
            StockLocationReference.bin_location(bin_id).key for bin_id in bin_ids
        ]

    # -- internals ----------------------------------------------------------

    def _net(
        self,
        product: ProductRef,
        keys: list[str],
        after: datetime | None = None,
        until: datetime | None = None,
    ) -> int:
        stmt = select(_net_quantity(keys)).where(
            StockMovement.product_id == product.product_id,
            StockMovement.product_version_id == product.product_version_id,
            _touches(keys),
        )
        if after is not None:
            stmt = stmt.where(StockMovement.created_at > as_utc(after))
        if until is not None:
            stmt = stmt.where(StockMovement.created_at <= as_utc(until))
        return int(self.session.scalar(stmt) or 0)

    @staticmethod
    def _to_record_view(row) -> StockRecordView:
        mapping = row._mapping
        return StockRecordView(
            product=ProductRef(mapping["product_id"], mapping["product_version_id"]),
            location=StockLocationReference.from_columns(mapping),
            quantity=mapping["quantity"],
        )

    @staticmethod
    def to_movement_view(movement: StockMovement) -> StockMovementView:
        return StockMovementView(
            id=movement.id,
            product=movement.product,
            quantity=movement.quantity,
            source=movement.source,
            destination=movement.destination,
            source_snapshot=dict(movement.source_location_snapshot),
            destination_snapshot=dict(movement.destination_location_snapshot),
            created_at=as_utc(movement.created_at),
            process_id=movement.stock_movement_process_id,
            user_id=movement.user_id,
            comment=movement.comment,
        )
