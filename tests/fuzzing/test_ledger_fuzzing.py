"""
Hypothesis fuzzing of the movement ledger.

Random movement sequences between a warehouse, one of its bins, special
locations and an order.  After every sequence:
- the projection of each location equals its inflows minus its outflows
- a rebuild from the ledger leaves every projected value unchanged
"""

from uuid import uuid4

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from stock_kernel.domain.dtos import MovementRequest
from stock_kernel.domain.locations import LocationKind, StockLocationReference
from stock_kernel.selectors.stock_selector import StockSelector
from stock_kernel.services.projection_service import StockProjectionService

ORDER_SNAPSHOT = {"order_number": "O1"}

movements = st.lists(
    st.tuples(
        st.integers(min_value=0, max_value=4),
        st.integers(min_value=0, max_value=4),
        st.integers(min_value=1, max_value=20),
    ).filter(lambda m: m[0] != m[1]),
    min_size=1,
    max_size=15,
)


@pytest.fixture
def locations(warehouse, warehouse_ref, make_bin_location) -> list[StockLocationReference]:
    return [
        warehouse_ref,
        StockLocationReference.bin_location(make_bin_location(warehouse).id),
        StockLocationReference.special("unknown"),
        StockLocationReference.special("stock_correction"),
        StockLocationReference.order(uuid4()),
    ]


def snapshot_for(location: StockLocationReference):
    return ORDER_SNAPSHOT if location.kind is LocationKind.ORDER else None


class TestLedgerSequences:
    @given(sequence=movements)
    @settings(
        max_examples=50,
        deadline=None,
        suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
    )
    def test_stock_is_inflow_minus_outflow(
        self, session, clock, ledger, make_product, locations, sequence
    ):
        product = make_product()
        expected = {location.key: 0 for location in locations}

        for source_index, destination_index, quantity in sequence:
            source, destination = locations[source_index], locations[destination_index]
            ledger.append_movement(
                MovementRequest(
                    product=product,
                    quantity=quantity,
                    source=source,
                    destination=destination,
                    source_snapshot=snapshot_for(source),
                    destination_snapshot=snapshot_for(destination),
                )
            )
            expected[source.key] -= quantity
            expected[destination.key] += quantity

        selector = StockSelector(session)
        projected = {location.key: selector.get_stock(product, location) for location in locations}
        assert projected == expected
        assert sum(projected.values()) == 0

        StockProjectionService(session, clock).rebuild_from_ledger([product.product_id])

        assert {
            location.key: selector.get_stock(product, location) for location in locations
        } == projected
