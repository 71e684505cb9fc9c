"""
Tests for ledger configuration loading.

Covers:
- Default configuration set
- YAML overrides and section defaults
- Validation errors
- Checksum determinism and the STOCK_CONFIG_TRACE record
"""

import pytest
import yaml

from stock_config import DEFAULT_CONFIG_PATH, get_active_config
from stock_config.loader import compute_checksum, load_yaml_file, parse_config
from stock_config.schema import LedgerConfig
from stock_engines.valuation import ValuationMethod
from stock_kernel.domain.dtos import NegativeStockPolicy


def write_config(tmp_path, data, name="ledger.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaults:
    def test_default_set(self):
        config = get_active_config()

        assert config.ledger.negative_stock_policy == "allow"
        assert config.ledger.retry.max_attempts == 5
        assert config.ledger.retry.backoff_seconds == pytest.approx(0.05)
        assert config.valuation.method == "most_recent_first"
        assert config.stocktaking.apply_corrections is True
        assert config.source_path == str(DEFAULT_CONFIG_PATH)
        assert len(config.checksum) == 64

    def test_values_feed_service_enums(self):
        config = get_active_config()

        assert NegativeStockPolicy(config.ledger.negative_stock_policy) is NegativeStockPolicy.ALLOW
        assert ValuationMethod(config.valuation.method) is ValuationMethod.MOST_RECENT_FIRST

    def test_empty_mapping_uses_schema_defaults(self):
        assert parse_config({}) == LedgerConfig()


class TestOverrides:
    def test_file_override(self, tmp_path):
        path = write_config(
            tmp_path,
            {
                "ledger": {"negative_stock_policy": "reject", "retry": {"max_attempts": 2}},
                "valuation": {"method": "weighted_average"},
                "stocktaking": {"apply_corrections": False},
            },
        )

        config = get_active_config(path)

        assert config.ledger.negative_stock_policy == "reject"
        assert config.ledger.retry.max_attempts == 2
        assert config.ledger.retry.backoff_seconds == pytest.approx(0.05)
        assert config.valuation.method == "weighted_average"
        assert config.stocktaking.apply_corrections is False
        assert config.source_path == str(path)

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert get_active_config(path).ledger.negative_stock_policy == "allow"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")


class TestValidation:
    @pytest.mark.parametrize(
        "data",
        [
            {"ledger": {"negative_stock_policy": "clamp"}},
            {"valuation": {"method": "lifo"}},
            {"ledger": {"retry": {"max_attempts": 0}}},
            {"ledger": {"retry": {"max_attempts": True}}},
            {"ledger": {"retry": {"max_attempts": "3"}}},
            {"ledger": {"retry": {"backoff_seconds": -1}}},
            {"ledger": {"retry": {"backoff_seconds": "fast"}}},
            {"stocktaking": {"apply_corrections": "yes"}},
            {"ledger": ["not", "a", "mapping"]},
        ],
    )
    def test_invalid_values(self, data):
        with pytest.raises(ValueError):
            parse_config(data)

    def test_root_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- allow\n- reject\n")

        with pytest.raises(ValueError):
            load_yaml_file(path)


class TestChecksumAndTrace:
    def test_checksum_ignores_key_order(self):
        first = {"ledger": {"negative_stock_policy": "allow"}, "valuation": {"method": "oldest_first"}}
        second = {"valuation": {"method": "oldest_first"}, "ledger": {"negative_stock_policy": "allow"}}

        assert compute_checksum(first) == compute_checksum(second)
        assert compute_checksum(first) != compute_checksum({})

    def test_trace_record(self, tmp_path, captured_logs):
        path = write_config(tmp_path, {"valuation": {"method": "oldest_first"}})

        config = get_active_config(path)

        traces = [r for r in captured_logs() if r["message"] == "STOCK_CONFIG_TRACE"]
        assert traces[-1]["trace_type"] == "STOCK_CONFIG_TRACE"
        assert traces[-1]["checksum"] == config.checksum
        assert traces[-1]["valuation_method"] == "oldest_first"
        assert traces[-1]["source_path"] == str(path)
