"""
stock_engines.valuation -- cost-layer walk for stock valuation.

Responsibility:
    Value the stock of one product from its available cost layers
    (purchases and the carry-over of the previous report) and derive the
    carry-over the next report starts from.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  StockValuationService
    gathers stock and layers from the database and persists the result.

Invariants enforced:
    - Layers are consumed in method order until the stock is exhausted;
      consumed quantities never exceed a layer's quantity.
    - Stock not covered by layers is surplus, priced at the weighted average
      of the available layers, else the product purchase price, else 0.
      The price source is always reported.
    - Zero or negative stock is valued 0 and consumes nothing.
    - Decimal-only arithmetic.

Failure modes:
    - ValueError for a layer with negative quantity or price.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID

from stock_kernel.db.types import MONEY_DECIMAL_PLACES, as_utc, round_money
from stock_kernel.domain.dtos import CostLayerType
from stock_kernel.logging_config import get_logger
from stock_engines.tracer import traced_engine

logger = get_logger("engines.valuation")

_ZERO = Decimal("0")


class ValuationMethod(str, Enum):
    """Order in which purchases are assumed to still be in stock."""

    MOST_RECENT_FIRST = "most_recent_first"  # remaining stock = newest purchases
    OLDEST_FIRST = "oldest_first"            # remaining stock = oldest purchases
    WEIGHTED_AVERAGE = "weighted_average"


class PriceSource(str, Enum):
    """Where the unit price of surplus stock came from."""

    LAYER_AVERAGE = "layer_average"
    PRODUCT_PURCHASE_PRICE = "product_purchase_price"
    UNPRICED = "unpriced"


@dataclass(frozen=True, slots=True)
class CostLayer:
    """
    A quantity bought at one net unit price.

    Carry-over layers name the report row they were derived from.
    """

    layer_type: CostLayerType
    quantity: int
    unit_price_net: Decimal
    purchased_at: datetime | None = None
    goods_receipt_id: UUID | None = None
    carry_over_report_row_id: UUID | None = None

    def __post_init__(self) -> None:
        if self.quantity < 0:
            raise ValueError(f"Cost layer quantity cannot be negative, got {self.quantity}")
        if self.unit_price_net < 0:
            raise ValueError(f"Cost layer price cannot be negative, got {self.unit_price_net}")

    @property
    def value(self) -> Decimal:
        return self.unit_price_net * self.quantity


@dataclass(frozen=True, slots=True)
class LayerConsumption:
    """How much of one layer the walk used."""

    layer: CostLayer
    quantity_used: int


@dataclass(frozen=True, slots=True)
class ProductValuation:
    """Valuation of one product's stock."""

    stock: int
    consumptions: tuple[LayerConsumption, ...]
    valuation_net: Decimal
    average_purchase_price_net: Decimal | None
    surplus_stock: int = 0
    surplus_purchase_price_net: Decimal | None = None
    surplus_price_source: PriceSource | None = None


def weighted_average_price(layers: Iterable[CostLayer]) -> Decimal | None:
    """Quantity-weighted unit price of ``layers`` (None without quantity)."""
    quantity = 0
    value = _ZERO
    for layer in layers:
        quantity += layer.quantity
        value += layer.value
    if quantity == 0:
        return None
    return round_money(value / quantity, MONEY_DECIMAL_PLACES)


def order_layers(layers: Sequence[CostLayer], method: ValuationMethod) -> list[CostLayer]:
    """
    Layers in the order the walk consumes them.

    Layers without a purchase date sort as oldest.  The sort is stable, so
    layers with the same date keep their input order.
    """
    newest_first = method is not ValuationMethod.OLDEST_FIRST

    def _key(item: tuple[int, CostLayer]) -> tuple[int, float, int]:
        index, layer = item
        if layer.purchased_at is None:
            rank, ts = 0, 0.0
        else:
            rank, ts = 1, as_utc(layer.purchased_at).timestamp()
        if newest_first:
            rank, ts = -rank, -ts
        return (rank, ts, index)

    return [layer for _, layer in sorted(enumerate(layers), key=_key)]


@traced_engine("stock_valuation", "1.0", fingerprint_fields=("stock", "method", "fallback_price"))
def value_product(
    *,
    stock: int,
    layers: Sequence[CostLayer],
    method: ValuationMethod,
    fallback_price: Decimal | None = None,
) -> ProductValuation:
    """
    Walk the cost layers of one product.

    Args:
        stock: Warehouse stock at the reporting time.
        layers: Carry-over and purchase layers available to this report.
        method: Consumption order.
        fallback_price: Product purchase price for surplus stock when no
            layer carries a quantity.
    """
    method = ValuationMethod(method)
    ordered = order_layers(layers, method)

    if stock <= 0:
        return ProductValuation(
            stock=stock,
            consumptions=tuple(LayerConsumption(layer, 0) for layer in ordered),
            valuation_net=_ZERO,
            average_purchase_price_net=weighted_average_price(ordered),
        )

    average = weighted_average_price(ordered)
    remaining = stock
    value = _ZERO
    consumptions = []
    for layer in ordered:
        used = min(remaining, layer.quantity)
        remaining -= used
        if method is ValuationMethod.WEIGHTED_AVERAGE:
            value += average * used if used else _ZERO
        else:
            value += layer.unit_price_net * used
        consumptions.append(LayerConsumption(layer, used))

    surplus_price: Decimal | None = None
    source: PriceSource | None = None
    if remaining > 0:
        if average is not None:
            surplus_price, source = average, PriceSource.LAYER_AVERAGE
        elif fallback_price is not None:
            surplus_price, source = Decimal(fallback_price), PriceSource.PRODUCT_PURCHASE_PRICE
        else:
            surplus_price, source = _ZERO, PriceSource.UNPRICED
        value += surplus_price * remaining
        logger.debug(
            "valuation_surplus_detected",
            extra={"surplus_stock": remaining, "price_source": source.value},
        )

    return ProductValuation(
        stock=stock,
        consumptions=tuple(consumptions),
        valuation_net=round_money(value, MONEY_DECIMAL_PLACES),
        average_purchase_price_net=round_money(value / stock, MONEY_DECIMAL_PLACES),
        surplus_stock=remaining,
        surplus_purchase_price_net=surplus_price,
        surplus_price_source=source,
    )


def carry_over_layers(
    *,
    stock: int,
    valuation_net: Decimal,
    reporting_time: datetime,
    report_row_id: UUID | None = None,
) -> list[CostLayer]:
    """
    The layer the next report inherits from a persisted report row.

    The valued stock becomes one carry-over purchase of ``stock`` units at
    ``valuation_net / stock``, dated one second before the reporting time
    so it sorts before purchases booked at that instant.  Rows without
    positive stock carry nothing.
    """
    if stock <= 0:
        return []
    return [
        CostLayer(
            layer_type=CostLayerType.CARRY_OVER,
            quantity=stock,
            unit_price_net=round_money(Decimal(valuation_net) / stock, MONEY_DECIMAL_PLACES),
            purchased_at=as_utc(reporting_time) - timedelta(seconds=1),
            carry_over_report_row_id=report_row_id,
        )
    ]
