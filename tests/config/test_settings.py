"""
Tests for cellar_config -- YAML settings loading and validation.

Covers:
- The shipped defaults load and map onto the kernel LedgerPolicy
- Overrides from a custom file
- Missing sections / keys and invalid values raise ConfigurationError
- Checksum determinism and the load log line
"""

from copy import deepcopy
from decimal import Decimal

import pytest
import yaml

from cellar_config import DEFAULT_CONFIG_PATH, get_active_config
from cellar_config.loader import compute_checksum, load_yaml_file, parse_settings
from cellar_config.schema import ConfigurationError
from cellar_kernel.domain.lifecycle import VesselStatus
from cellar_kernel.domain.policy import LedgerPolicy


@pytest.fixture
def default_data():
    return load_yaml_file(DEFAULT_CONFIG_PATH)


def write_config(tmp_path, data) -> str:
    path = tmp_path / "cellar.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestShippedDefaults:
    def test_defaults_load(self):
        settings = get_active_config()
        assert settings.config_id == "CELLAR-DEFAULT"
        assert settings.ledger.drain_threshold_liters == Decimal("0.1")
        assert settings.ledger.post_racking_vessel_status == VesselStatus.CLEANING
        assert settings.reconciliation.unit == "gal"
        assert settings.tax.small_producer_credit_limit_gallons == Decimal("30000")

    def test_policy_matches_kernel_defaults(self):
        """The shipped file and the kernel's fallback policy agree."""
        assert get_active_config().ledger_policy() == LedgerPolicy()

    def test_load_is_logged(self, captured_logs):
        settings = get_active_config()
        records = [r for r in captured_logs() if r["message"] == "cellar_config_loaded"]
        assert records
        assert records[-1]["checksum"] == settings.checksum


class TestOverrides:
    def test_custom_file(self, tmp_path, default_data):
        data = deepcopy(default_data)
        data["config_id"] = "SMALL-CELLAR"
        data["ledger"]["drain_threshold_liters"] = "0.5"
        data["reconciliation"]["unit"] = "liters"
        settings = get_active_config(write_config(tmp_path, data))

        assert settings.config_id == "SMALL-CELLAR"
        assert settings.ledger_policy().drain_threshold_liters == Decimal("0.5")
        assert settings.reconciliation.unit == "L"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "nope.yaml")


class TestValidation:
    def test_missing_section(self, default_data):
        del default_data["tax"]
        with pytest.raises(ConfigurationError) as exc_info:
            parse_settings(default_data)
        assert exc_info.value.key == "tax"

    def test_missing_key(self, default_data):
        del default_data["ledger"]["drain_threshold_liters"]
        with pytest.raises(ConfigurationError) as exc_info:
            parse_settings(default_data)
        assert exc_info.value.key == "ledger.drain_threshold_liters"

    @pytest.mark.parametrize(
        "section, key, value",
        [
            ("ledger", "volume_epsilon_liters", "lots"),
            ("ledger", "drain_threshold_liters", "-1"),
            ("ledger", "post_drain_vessel_status", "in_use"),
            ("ledger", "post_racking_vessel_status", "scrapped"),
            ("ledger", "blend_product_kinds", "pommeau"),
            ("packaging", "shelf_life_days", -5),
            ("reconciliation", "unit", "barrel"),
            ("tax", "hard_cider_rate_per_gallon", "NaN"),
        ],
    )
    def test_invalid_values(self, default_data, section, key, value):
        default_data[section][key] = value
        with pytest.raises(ConfigurationError):
            parse_settings(default_data)

    def test_version_must_be_integer(self, default_data):
        default_data["version"] = "one"
        with pytest.raises(ConfigurationError):
            parse_settings(default_data)


class TestChecksum:
    def test_deterministic(self, default_data):
        assert compute_checksum(default_data) == compute_checksum(deepcopy(default_data))

    def test_changes_with_content(self, default_data):
        before = compute_checksum(default_data)
        default_data["ledger"]["drain_threshold_liters"] = "0.2"
        assert compute_checksum(default_data) != before

    def test_settings_carry_checksum(self, default_data):
        assert parse_settings(default_data).checksum == compute_checksum(default_data)
