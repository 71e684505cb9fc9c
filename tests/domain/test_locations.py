"""
Tests for the polymorphic stock location reference.

Covers:
- Exactly one discriminator, matching the kind
- Canonical keys and column payloads
- Special location vocabulary
- Physical vs. batch-void kinds
"""

from uuid import uuid4

import pytest

from stock_kernel.domain.locations import (
    LocationKind,
    SpecialStockLocation,
    StockLocationReference,
    count_discriminators,
    resolve_location,
)
from stock_kernel.exceptions import InvalidLocationReference


class TestResolveLocation:
    def test_resolves_each_uuid_kind(self):
        for kind, field in [
            ("warehouse", "warehouse_id"),
            ("bin_location", "bin_location_id"),
            ("order", "order_id"),
            ("return_order", "return_order_id"),
            ("supplier_order", "supplier_order_id"),
            ("goods_receipt", "goods_receipt_id"),
            ("stock_container", "stock_container_id"),
        ]:
            identifier = uuid4()
            ref = resolve_location(kind, **{field: identifier})
            assert ref.kind is LocationKind(kind)
            assert ref.identifier == identifier

    def test_accepts_uuid_strings(self):
        identifier = uuid4()
        ref = resolve_location("warehouse", warehouse_id=str(identifier))
        assert ref.warehouse_id == identifier

    def test_special_location_by_technical_name(self):
        ref = resolve_location("special_stock_location", special_stock_location="stock_correction")
        assert ref.special_stock_location is SpecialStockLocation.STOCK_CORRECTION
        assert ref.is_special

    def test_rejects_missing_discriminator(self):
        with pytest.raises(InvalidLocationReference) as exc_info:
            resolve_location("warehouse")
        assert exc_info.value.code == "INVALID_LOCATION_REFERENCE"

    def test_rejects_two_discriminators(self):
        with pytest.raises(InvalidLocationReference):
            resolve_location("warehouse", warehouse_id=uuid4(), bin_location_id=uuid4())

    def test_rejects_discriminator_of_other_kind(self):
        with pytest.raises(InvalidLocationReference):
            resolve_location("warehouse", bin_location_id=uuid4())

    def test_rejects_unknown_kind(self):
        with pytest.raises(InvalidLocationReference):
            resolve_location("shelf", warehouse_id=uuid4())

    def test_rejects_unknown_special_location(self):
        with pytest.raises(InvalidLocationReference):
            StockLocationReference.special("lost_and_found")

    def test_rejects_unknown_field(self):
        with pytest.raises(InvalidLocationReference):
            resolve_location("warehouse", warehouse_id=uuid4(), shelf_id=uuid4())

    def test_rejects_malformed_uuid(self):
        with pytest.raises(InvalidLocationReference):
            resolve_location("order", order_id="not-a-uuid")


class TestKeysAndColumns:
    def test_key_is_canonical(self):
        identifier = uuid4()
        assert StockLocationReference.warehouse(identifier).key == f"warehouse:{identifier}"
        assert (
            StockLocationReference.special(SpecialStockLocation.UNKNOWN).key
            == "special_stock_location:unknown"
        )

    def test_equal_references_have_equal_keys(self):
        identifier = uuid4()
        a = resolve_location("bin_location", bin_location_id=identifier)
        b = StockLocationReference.bin_location(str(identifier))
        assert a == b
        assert a.key == b.key

    def test_columns_roundtrip(self):
        ref = StockLocationReference.goods_receipt(uuid4())
        columns = ref.to_columns("source_")
        assert columns["source_location_type"] == "goods_receipt"
        assert count_discriminators({k[len("source_"):]: v for k, v in columns.items()}) == 1
        assert StockLocationReference.from_columns(columns, prefix="source_") == ref

    def test_describe_special(self):
        ref = StockLocationReference.special("initialization")
        assert ref.describe() == {"technical_name": "initialization"}


class TestPhysicalKinds:
    @pytest.mark.parametrize(
        "ref_factory, physical",
        [
            (lambda: StockLocationReference.warehouse(uuid4()), True),
            (lambda: StockLocationReference.bin_location(uuid4()), True),
            (lambda: StockLocationReference.stock_container(uuid4()), True),
            (lambda: StockLocationReference.order(uuid4()), False),
            (lambda: StockLocationReference.goods_receipt(uuid4()), False),
            (lambda: StockLocationReference.special("unknown"), False),
        ],
    )
    def test_physical(self, ref_factory, physical):
        assert ref_factory().is_physical is physical

    def test_vocabulary_is_closed(self):
        assert {s.value for s in SpecialStockLocation} == {
            "unknown",
            "initialization",
            "import",
            "stock_correction",
            "product_total_stock_change",
            "product_available_stock_change",
        }
