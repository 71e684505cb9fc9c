"""
Tests for StockLedgerService.

Covers:
- Append effects on the projection and the stored ledger row
- Validation: quantity, locations, products, snapshots
- Idempotent replay and payload mismatch on id reuse
- All-or-nothing batches
- Negative stock policy
- Movement processes and structured logs
"""

from uuid import uuid4

import pytest
from sqlalchemy import func, select

from stock_kernel.domain.dtos import MovementRequest, NegativeStockPolicy, ProductRef
from stock_kernel.domain.locations import StockLocationReference
from stock_kernel.exceptions import (
    InvalidLocationReference,
    InvalidMovementQuantity,
    InvalidMovementSnapshot,
    LocationNotFound,
    MovementPayloadMismatch,
    NegativeStockNotAllowed,
    ProductNotFound,
)
from stock_kernel.models.movement import StockMovement, StockMovementProcess
from stock_kernel.models.registry import Product
from stock_kernel.selectors.stock_selector import StockSelector
from stock_kernel.services.ledger_service import StockLedgerService

INITIALIZATION = StockLocationReference.special("initialization")
CORRECTION = StockLocationReference.special("stock_correction")


def movement_count(session) -> int:
    return session.scalar(select(func.count()).select_from(StockMovement))


class TestAppend:
    def test_append_moves_stock(self, session, move, product, warehouse_ref):
        selector = StockSelector(session)

        move(product, 10, INITIALIZATION, warehouse_ref)

        assert selector.get_stock(product, warehouse_ref) == 10
        assert selector.get_stock(product, INITIALIZATION) == -10

    def test_ledger_row_carries_locations_and_snapshots(
        self, session, move, product, warehouse, warehouse_ref, clock
    ):
        movement_id = move(product, 3, INITIALIZATION, warehouse_ref, comment="opening stock")

        row = session.get(StockMovement, movement_id)
        assert row.quantity == 3
        assert row.source == INITIALIZATION
        assert row.destination == warehouse_ref
        assert row.source_location_snapshot == {"technical_name": "initialization"}
        assert row.destination_location_snapshot == {"code": warehouse.code, "name": warehouse.name}
        assert row.comment == "opening stock"
        assert len(row.payload_hash) == 64

    def test_bin_location_snapshot_names_the_warehouse(
        self, session, move, product, warehouse, make_bin_location
    ):
        bin_location = make_bin_location(warehouse, code="A-01")

        movement_id = move(
            product, 1, INITIALIZATION, StockLocationReference.bin_location(bin_location.id)
        )

        snapshot = session.get(StockMovement, movement_id).destination_location_snapshot
        assert snapshot["code"] == "A-01"
        assert snapshot["warehouse_code"] == warehouse.code

    def test_unknown_to_bin_then_bin_to_order(
        self, session, move, product, warehouse, make_bin_location
    ):
        bin_ref = StockLocationReference.bin_location(make_bin_location(warehouse).id)
        order_ref = StockLocationReference.order(uuid4())
        selector = StockSelector(session)

        move(product, 10, StockLocationReference.special("unknown"), bin_ref)
        move(product, 4, bin_ref, order_ref, destination_snapshot={"order_number": "O1"})

        assert selector.get_stock(product, bin_ref) == 6
        assert selector.get_stock(product, order_ref) == 4
        assert selector.get_stock(product, StockLocationReference.special("unknown")) == -10

    def test_consecutive_moves_accumulate(self, session, move, product, warehouse_ref, make_warehouse):
        other = StockLocationReference.warehouse(make_warehouse().id)
        selector = StockSelector(session)

        move(product, 10, INITIALIZATION, warehouse_ref)
        move(product, 4, warehouse_ref, other)
        move(product, 1, other, CORRECTION)

        assert selector.get_stock(product, warehouse_ref) == 6
        assert selector.get_stock(product, other) == 3
        assert selector.get_stock(product, CORRECTION) == 1


class TestValidation:
    @pytest.mark.parametrize("quantity", [0, -1, True, 1.5, "3"])
    def test_rejects_invalid_quantity(self, session, move, product, warehouse_ref, quantity):
        with pytest.raises(InvalidMovementQuantity) as exc_info:
            move(product, quantity, INITIALIZATION, warehouse_ref)

        assert exc_info.value.code == "INVALID_MOVEMENT_QUANTITY"
        assert movement_count(session) == 0

    def test_rejects_same_source_and_destination(self, move, product, warehouse_ref):
        with pytest.raises(InvalidLocationReference):
            move(product, 1, warehouse_ref, warehouse_ref)

    def test_rejects_unknown_product(self, move, warehouse_ref):
        with pytest.raises(ProductNotFound):
            move(ProductRef(uuid4(), uuid4()), 1, INITIALIZATION, warehouse_ref)

    def test_rejects_stale_product_version(self, move, product, warehouse_ref):
        with pytest.raises(ProductNotFound):
            move(ProductRef(product.product_id, uuid4()), 1, INITIALIZATION, warehouse_ref)

    def test_rejects_unknown_warehouse(self, session, move, product):
        with pytest.raises(LocationNotFound) as exc_info:
            move(product, 1, INITIALIZATION, StockLocationReference.warehouse(uuid4()))

        assert exc_info.value.code == "LOCATION_NOT_FOUND"
        assert movement_count(session) == 0

    def test_external_location_requires_snapshot(self, move, product, warehouse_ref):
        order = StockLocationReference.order(uuid4())

        with pytest.raises(InvalidMovementSnapshot):
            move(product, 1, warehouse_ref, order)

    def test_external_location_with_snapshot(self, session, move, product, warehouse_ref):
        order = StockLocationReference.order(uuid4())
        move(product, 5, INITIALIZATION, warehouse_ref)

        movement_id = move(
            product, 2, warehouse_ref, order, destination_snapshot={"order_number": "10001"}
        )

        row = session.get(StockMovement, movement_id)
        assert row.destination_location_snapshot == {"order_number": "10001"}

    def test_rejects_empty_snapshot_for_external_location(self, move, product, warehouse_ref):
        with pytest.raises(InvalidMovementSnapshot):
            move(
                product, 1, warehouse_ref, StockLocationReference.order(uuid4()),
                destination_snapshot={},
            )

    def test_rejects_unserializable_snapshot(self, move, product, warehouse_ref):
        with pytest.raises(InvalidMovementSnapshot):
            move(
                product, 1, INITIALIZATION, warehouse_ref,
                destination_snapshot={"when": object()},
            )


class TestIdempotency:
    def test_replay_is_a_no_op(self, session, move, product, warehouse_ref, captured_logs):
        movement_id = uuid4()

        first = move(product, 7, INITIALIZATION, warehouse_ref, movement_id=movement_id)
        second = move(product, 7, INITIALIZATION, warehouse_ref, movement_id=movement_id)

        assert first == second == movement_id
        assert movement_count(session) == 1
        assert StockSelector(session).get_stock(product, warehouse_ref) == 7
        assert any(r["message"] == "movement_duplicate" for r in captured_logs())

    def test_id_reuse_with_other_payload_is_rejected(self, session, move, product, warehouse_ref):
        movement_id = uuid4()
        move(product, 7, INITIALIZATION, warehouse_ref, movement_id=movement_id)

        with pytest.raises(MovementPayloadMismatch) as exc_info:
            move(product, 8, INITIALIZATION, warehouse_ref, movement_id=movement_id)

        assert exc_info.value.code == "MOVEMENT_PAYLOAD_MISMATCH"
        assert exc_info.value.expected_hash != exc_info.value.received_hash
        assert StockSelector(session).get_stock(product, warehouse_ref) == 7

    def test_replay_succeeds_after_product_version_changed(
        self, session, move, product, warehouse_ref
    ):
        movement_id = uuid4()
        move(product, 7, INITIALIZATION, warehouse_ref, movement_id=movement_id)
        session.get(Product, product.product_id).version_id = uuid4()
        session.flush()

        replayed = move(product, 7, INITIALIZATION, warehouse_ref, movement_id=movement_id)

        assert replayed == movement_id
        assert movement_count(session) == 1

        with pytest.raises(ProductNotFound):
            move(product, 7, INITIALIZATION, warehouse_ref)

    def test_generated_ids_are_distinct(self, move, product, warehouse_ref):
        assert move(product, 1, INITIALIZATION, warehouse_ref) != move(
            product, 1, INITIALIZATION, warehouse_ref
        )


class TestBatch:
    def test_batch_applies_every_line(self, session, ledger, make_product, warehouse_ref):
        a, b = make_product(), make_product()

        ids = ledger.append_movement_batch(
            [
                MovementRequest(a, 2, INITIALIZATION, warehouse_ref),
                MovementRequest(b, 3, INITIALIZATION, warehouse_ref),
            ]
        )

        selector = StockSelector(session)
        assert len(ids) == 2
        assert selector.get_stock(a, warehouse_ref) == 2
        assert selector.get_stock(b, warehouse_ref) == 3

    def test_batch_is_all_or_nothing(self, session, ledger, make_product, warehouse_ref, captured_logs):
        a, b = make_product(), make_product()

        with pytest.raises(InvalidMovementQuantity):
            ledger.append_movement_batch(
                [
                    MovementRequest(a, 2, INITIALIZATION, warehouse_ref),
                    MovementRequest(b, 0, INITIALIZATION, warehouse_ref),
                ]
            )

        assert movement_count(session) == 0
        assert StockSelector(session).get_stock(a, warehouse_ref) == 0
        assert any(r["message"] == "movement_batch_rolled_back" for r in captured_logs())

    def test_empty_batch(self, ledger):
        assert ledger.append_movement_batch([]) == []


class TestNegativeStockPolicy:
    def test_allow_policy_permits_oversell(self, session, move, product, warehouse_ref):
        move(product, 5, warehouse_ref, CORRECTION)

        assert StockSelector(session).get_stock(product, warehouse_ref) == -5

    def test_reject_policy_blocks_physical_source(self, session, clock, product, warehouse_ref):
        ledger = StockLedgerService(session, clock, NegativeStockPolicy.REJECT)
        ledger.append_movement(MovementRequest(product, 3, INITIALIZATION, warehouse_ref))

        with pytest.raises(NegativeStockNotAllowed) as exc_info:
            ledger.append_movement(MovementRequest(product, 4, warehouse_ref, CORRECTION))

        assert exc_info.value.resulting_quantity == -1
        assert StockSelector(session).get_stock(product, warehouse_ref) == 3
        assert movement_count(session) == 1

    def test_reject_policy_ignores_virtual_sources(self, session, clock, product, warehouse_ref):
        ledger = StockLedgerService(session, clock, "reject")

        ledger.append_movement(MovementRequest(product, 3, INITIALIZATION, warehouse_ref))

        assert StockSelector(session).get_stock(product, INITIALIZATION) == -3


class TestProcessesAndLogging:
    def test_movements_reference_their_process(self, session, ledger, move, product, warehouse_ref):
        process_id = ledger.create_movement_process("goods_receipt", reference="GR-1")

        movement_id = move(product, 1, INITIALIZATION, warehouse_ref, process_id=process_id)

        assert session.get(StockMovementProcess, process_id).process_type == "goods_receipt"
        assert session.get(StockMovement, movement_id).stock_movement_process_id == process_id

    def test_append_logs_movement_context(self, move, product, warehouse_ref, captured_logs):
        movement_id = move(product, 1, INITIALIZATION, warehouse_ref)

        appended = [r for r in captured_logs() if r["message"] == "movement_appended"]
        assert len(appended) == 1
        assert appended[0]["movement_id"] == str(movement_id)
        assert appended[0]["destination"] == warehouse_ref.key
