"""
Tests for the pure stocktake engine.

Covers:
- Counting-time stock reconstruction over a half-open window
- Merging repeated counts
- Percentage differences and per-product summaries
- Engine trace records
"""

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st

from stock_engines.stocktake import (
    CountedQuantity,
    correction_delta,
    merge_counts,
    percentage_difference,
    reconstruct_stock_at,
    summarize_counts,
)
from stock_kernel.domain.dtos import ProductRef, StockMovementView
from stock_kernel.domain.locations import StockLocationReference

START = datetime(2024, 3, 1, 8, 0, tzinfo=UTC)
BIN = StockLocationReference.bin_location(uuid4())
OTHER_BIN = StockLocationReference.bin_location(uuid4())
CORRECTION = StockLocationReference.special("stock_correction")
PRODUCT = ProductRef(uuid4(), uuid4())


def movement(quantity, source, destination, minutes) -> StockMovementView:
    return StockMovementView(
        id=uuid4(),
        product=PRODUCT,
        quantity=quantity,
        source=source,
        destination=destination,
        source_snapshot={},
        destination_snapshot={},
        created_at=START + timedelta(minutes=minutes),
    )


def count(product=PRODUCT, quantity=0, stock=0, minutes=0) -> CountedQuantity:
    return CountedQuantity(
        product=product,
        quantity=quantity,
        stock_at_counting=stock,
        counted_at=START + timedelta(minutes=minutes),
    )


class TestReconstruction:
    def test_window_excludes_start_and_includes_counting_time(self):
        movements = [
            movement(5, CORRECTION, BIN, 0),    # already in start stock
            movement(2, BIN, OTHER_BIN, 10),
            movement(3, CORRECTION, BIN, 30),   # exactly at counting time
            movement(7, CORRECTION, BIN, 31),   # after counting
        ]

        stock = reconstruct_stock_at(
            start_stock=5,
            movements=movements,
            location=BIN,
            started_at=START,
            counted_at=START + timedelta(minutes=30),
        )

        assert stock == 6

    def test_unrelated_movements_are_ignored(self):
        stock = reconstruct_stock_at(
            start_stock=1,
            movements=[movement(4, CORRECTION, OTHER_BIN, 5)],
            location=BIN,
            started_at=START,
            counted_at=START + timedelta(hours=1),
        )

        assert stock == 1

    def test_naive_timestamps_read_as_utc(self):
        aware = movement(2, CORRECTION, BIN, 5)
        naive = replace(aware, created_at=aware.created_at.replace(tzinfo=None))

        stock = reconstruct_stock_at(
            start_stock=0,
            movements=[naive],
            location=BIN,
            started_at=START,
            counted_at=START + timedelta(minutes=10),
        )

        assert stock == 2

    @given(
        st.lists(
            st.tuples(
                st.integers(min_value=1, max_value=50),
                st.booleans(),
                st.integers(min_value=1, max_value=120),
            ),
            max_size=30,
        )
    )
    def test_reconstruction_matches_prefix_sum(self, steps):
        movements = [
            movement(q, CORRECTION, BIN, m) if inbound else movement(q, BIN, CORRECTION, m)
            for q, inbound, m in steps
        ]
        counted_at = START + timedelta(minutes=60)

        expected = sum(
            (q if inbound else -q) for q, inbound, m in steps if m <= 60
        )

        assert reconstruct_stock_at(
            start_stock=0,
            movements=movements,
            location=BIN,
            started_at=START,
            counted_at=counted_at,
        ) == expected


class TestMergeCounts:
    def test_latest_count_wins(self):
        merged = merge_counts(count(quantity=2, stock=4, minutes=0), count(quantity=6, stock=5, minutes=5))

        assert (merged.quantity, merged.stock_at_counting) == (6, 5)

    def test_older_count_does_not_replace_newer(self):
        newer = count(quantity=6, minutes=5)

        assert merge_counts(newer, count(quantity=1, minutes=0)) is newer

    def test_different_products_cannot_merge(self):
        with pytest.raises(ValueError):
            merge_counts(count(), count(product=ProductRef(uuid4(), uuid4())))


class TestPercentageDifference:
    @pytest.mark.parametrize(
        ("counted", "expected", "percent"),
        [
            (8, 10, Decimal("-20.00")),
            (5, 4, Decimal("25.00")),
            (1, 3, Decimal("-66.67")),
            (2, 3, Decimal("-33.33")),
            (10, 10, Decimal("0.00")),
        ],
    )
    def test_rounding(self, counted, expected, percent):
        assert percentage_difference(counted, expected) == percent

    def test_undefined_without_expected_stock(self):
        assert percentage_difference(3, 0) is None


class TestSummaries:
    def test_counts_are_summed_per_product(self):
        other = ProductRef(uuid4(), uuid4())

        summaries = summarize_counts(
            counts=[count(quantity=3, stock=4), count(quantity=2, stock=2), count(other, 1, 0)],
            warehouse_stock={PRODUCT: 6},
        )

        by_product = {s.product: s for s in summaries}
        assert by_product[PRODUCT].counted_stock == 5
        assert by_product[PRODUCT].expected_stock == 6
        assert by_product[PRODUCT].absolute_difference == -1
        assert by_product[PRODUCT].warehouse_stock == 6
        assert by_product[other].percentage_difference is None
        assert by_product[other].warehouse_stock == 0

    def test_summaries_are_ordered_by_product(self):
        products = [ProductRef(uuid4(), uuid4()) for _ in range(5)]

        summaries = summarize_counts(counts=[count(p) for p in products], warehouse_stock={})

        assert [s.product for s in summaries] == sorted(
            products, key=lambda p: (str(p.product_id), str(p.product_version_id))
        )

    def test_correction_delta(self):
        assert correction_delta(8, 10) == -2
        assert correction_delta(3, 3) == 0

    def test_engine_emits_trace(self, captured_logs):
        summarize_counts(counts=[count()], warehouse_stock={})

        traces = [r for r in captured_logs() if r["message"] == "STOCK_ENGINE_TRACE"]
        assert traces[-1]["engine_name"] == "stocktake_summary"
        assert traces[-1]["engine_version"] == "1.0"
