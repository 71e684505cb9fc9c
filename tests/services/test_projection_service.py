"""
Tests for StockProjectionService.

Covers:
- Atomic insert-or-increment
- Rebuild from the ledger as the oracle of the projection
- Rebuild scoped to products
"""

from sqlalchemy import func, select, update

from stock_kernel.domain.locations import StockLocationReference
from stock_kernel.models.stock import StockRecord
from stock_kernel.selectors.stock_selector import StockSelector
from stock_kernel.services.projection_service import StockProjectionService

INITIALIZATION = StockLocationReference.special("initialization")
CORRECTION = StockLocationReference.special("stock_correction")


def projection_snapshot(session) -> dict:
    rows = session.execute(
        select(StockRecord.product_id, StockRecord.location_key, StockRecord.quantity)
    ).all()
    return {(p, k): q for p, k, q in rows}


class TestApplyDelta:
    def test_creates_then_increments(self, session, clock, product, warehouse_ref):
        projection = StockProjectionService(session, clock)

        first_id, first = projection.apply_delta(product, warehouse_ref, 5)
        second_id, second = projection.apply_delta(product, warehouse_ref, -2)

        assert first_id == second_id
        assert (first, second) == (5, 3)
        assert session.scalar(select(func.count()).select_from(StockRecord)) == 1

    def test_row_keeps_location_columns(self, session, clock, product, warehouse, warehouse_ref):
        StockProjectionService(session, clock).apply_delta(product, warehouse_ref, 1)

        row = session.execute(
            select(StockRecord.location_type, StockRecord.warehouse_id, StockRecord.bin_location_id)
        ).one()
        assert row == ("warehouse", warehouse.id, None)


class TestRebuild:
    def test_rebuild_reproduces_projection(self, session, clock, move, make_product, warehouse, warehouse_ref, make_bin_location):
        bin_ref = StockLocationReference.bin_location(make_bin_location(warehouse).id)
        a, b = make_product(), make_product()
        move(a, 10, INITIALIZATION, warehouse_ref)
        move(a, 4, warehouse_ref, bin_ref)
        move(b, 2, INITIALIZATION, bin_ref)
        move(b, 2, bin_ref, CORRECTION)
        before = projection_snapshot(session)

        result = StockProjectionService(session, clock).rebuild_from_ledger()

        assert projection_snapshot(session) == before
        assert result.movements_replayed == 4
        assert result.rows_written == len(before)
        assert result.product_scope is None

    def test_rebuild_keeps_zero_rows(self, session, clock, move, product, warehouse_ref):
        move(product, 2, INITIALIZATION, warehouse_ref)
        move(product, 2, warehouse_ref, CORRECTION)

        StockProjectionService(session, clock).rebuild_from_ledger()

        assert projection_snapshot(session)[(product.product_id, warehouse_ref.key)] == 0

    def test_rebuild_repairs_drift(self, session, clock, move, product, warehouse_ref):
        move(product, 6, INITIALIZATION, warehouse_ref)
        session.execute(
            update(StockRecord)
            .where(StockRecord.location_key == warehouse_ref.key)
            .values(quantity=999)
        )

        StockProjectionService(session, clock).rebuild_from_ledger([product.product_id])

        assert StockSelector(session).get_stock(product, warehouse_ref) == 6

    def test_scoped_rebuild_leaves_other_products(self, session, clock, move, make_product, warehouse_ref, captured_logs):
        a, b = make_product(), make_product()
        move(a, 1, INITIALIZATION, warehouse_ref)
        move(b, 1, INITIALIZATION, warehouse_ref)
        session.execute(
            update(StockRecord)
            .where(StockRecord.product_id == b.product_id, StockRecord.location_key == warehouse_ref.key)
            .values(quantity=42)
        )

        result = StockProjectionService(session, clock).rebuild_from_ledger([a.product_id])

        selector = StockSelector(session)
        assert result.product_scope == (a.product_id,)
        assert result.movements_replayed == 1
        assert selector.get_stock(a, warehouse_ref) == 1
        assert selector.get_stock(b, warehouse_ref) == 42
        assert any(r["message"] == "projection_rebuilt" for r in captured_logs())

    def test_rebuild_of_empty_ledger(self, session, clock):
        result = StockProjectionService(session, clock).rebuild_from_ledger()

        assert result.rows_written == 0
        assert result.movements_replayed == 0
