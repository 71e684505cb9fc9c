"""
Tests for structured logging.

Covers:
- JSON formatting of extras, context fields and exceptions
- LogContext binding and restoration
- get_logger namespacing
"""

import json
import logging
from decimal import Decimal
from uuid import uuid4

from stock_kernel.exceptions import NegativeStockNotAllowed
from stock_kernel.logging_config import LogContext, StructuredFormatter, get_logger


def format_record(message="event", exc_info=None, **extra) -> dict:
    record = logging.LogRecord("stock_kernel.test", logging.INFO, __file__, 1, message, (), exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(StructuredFormatter().format(record))


class TestStructuredFormatter:
    def test_base_fields(self):
        payload = format_record("movement_appended")

        assert payload["message"] == "movement_appended"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "stock_kernel.test"
        assert "ts" in payload

    def test_extras_are_serialized(self):
        movement_id = uuid4()

        payload = format_record(movement_id=movement_id, price=Decimal("1.50"), quantity=3)

        assert payload["movement_id"] == str(movement_id)
        assert payload["price"] == "1.50"
        assert payload["quantity"] == 3

    def test_exception_fields(self):
        try:
            raise NegativeStockNotAllowed("p-1", "warehouse:w-1", -2)
        except NegativeStockNotAllowed as exc:
            payload = format_record("rejected", exc_info=(type(exc), exc, exc.__traceback__))

        assert payload["exc_type"] == "NegativeStockNotAllowed"
        assert payload["exc_code"] == "NEGATIVE_STOCK_NOT_ALLOWED"
        assert payload["exc_resulting_quantity"] == -2
        assert "traceback" in payload


class TestLogContext:
    def test_bind_sets_and_restores(self):
        LogContext.set(correlation_id="outer")
        process_id = uuid4()

        with LogContext.bind(correlation_id="inner", process_id=process_id):
            inside = LogContext.get_all()
        after = LogContext.get_all()

        assert inside == {"correlation_id": "inner", "process_id": str(process_id)}
        assert after == {"correlation_id": "outer"}

    def test_none_values_are_skipped(self):
        with LogContext.bind(actor_id=None, movement_id="m-1"):
            assert LogContext.get_all() == {"movement_id": "m-1"}

    def test_context_fields_reach_the_record(self):
        with LogContext.bind(movement_id="m-2"):
            payload = format_record()

        assert payload["movement_id"] == "m-2"

    def test_clear(self):
        LogContext.set(trace_id="t-1")
        LogContext.clear()

        assert LogContext.get_all() == {}


def test_get_logger_namespace():
    assert get_logger("services.ledger").name == "stock_kernel.services.ledger"
