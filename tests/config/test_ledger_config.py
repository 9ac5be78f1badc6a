"""
Tests for ledger_config: YAML loading, validation and the config trace.
"""

from decimal import Decimal

import pytest
import yaml

from ledger_config import CONFIG_PATH_ENV, LedgerConfig, get_active_config
from ledger_config.loader import compute_checksum, parse_config


def _write(tmp_path, data, name="ledger.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaults:

    def test_shipped_default_matches_dataclass(self):
        config = get_active_config()

        assert config == LedgerConfig()
        assert config.low_balance_ratio == Decimal("0.10")
        assert config.bill_number_prefix == "FAT"
        assert len(config.checksum) == 64

    def test_empty_document_uses_defaults(self):
        assert parse_config({}) == LedgerConfig()

    def test_env_var_selects_file(self, tmp_path, monkeypatch):
        path = _write(tmp_path, {"config_id": "escolas", "balances": {"low_balance_ratio": "0.2"}})
        monkeypatch.setenv(CONFIG_PATH_ENV, str(path))

        config = get_active_config()

        assert config.config_id == "escolas"
        assert config.low_balance_ratio == Decimal("0.2")

    def test_explicit_path_wins_over_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_PATH_ENV, str(_write(tmp_path, {"config_id": "env"}, "a.yaml")))
        explicit = _write(tmp_path, {"config_id": "explicit"}, "b.yaml")

        assert get_active_config(explicit).config_id == "explicit"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "nope.yaml")


class TestValidation:

    @pytest.mark.parametrize(
        "data,key",
        [
            ({"balances": {"low_balance_ratio": "1"}}, "low_balance_ratio"),
            ({"balances": {"low_balance_ratio": "abc"}}, "low_balance_ratio"),
            ({"balances": {"quantity_decimal_places": 12}}, "quantity_decimal_places"),
            ({"balances": {"quantity_decimal_places": True}}, "quantity_decimal_places"),
            ({"splitting": {"default_mode": "random"}}, "default_mode"),
            ({"splitting": {"split_quantum": "0"}}, "split_quantum"),
            ({"paging": {"default_page_size": 600}}, "default_page_size"),
            ({"concurrency": {"max_lock_retries": 0}}, "max_lock_retries"),
            ({"billing": {"bill_number_prefix": ""}}, "bill_number_prefix"),
        ],
    )
    def test_bad_values_name_the_key(self, data, key):
        with pytest.raises(ValueError, match=key):
            parse_config(data)

    def test_float_ratio_parsed_without_binary_noise(self):
        assert parse_config({"balances": {"low_balance_ratio": 0.1}}).low_balance_ratio == Decimal("0.1")

    def test_split_mode_case_insensitive(self):
        assert parse_config({"splitting": {"default_mode": "PROPORTIONAL"}}).default_split_mode == "proportional"


class TestChecksum:

    def test_deterministic_and_key_order_independent(self):
        a = {"config_id": "x", "balances": {"low_balance_ratio": "0.1", "quantity_decimal_places": 2}}
        b = {"balances": {"quantity_decimal_places": 2, "low_balance_ratio": "0.1"}, "config_id": "x"}
        assert compute_checksum(a) == compute_checksum(b)

    def test_changes_with_content(self):
        assert compute_checksum({"version": 1}) != compute_checksum({"version": 2})


def test_config_trace_logged(captured_logs):
    config = get_active_config()

    traces = [r for r in captured_logs() if r["message"] == "LEDGER_CONFIG_TRACE"]
    assert len(traces) == 1
    assert traces[0]["checksum"] == config.checksum
    assert traces[0]["config_id"] == "default"
