"""
Tests for scheduler.yaml schema validation and settings loading.
"""

from pathlib import Path

import pytest
import yaml

from tools.config_validator import ConfigError, load_settings, validate_config_file


REPO_CONFIG = Path(__file__).resolve().parent.parent / "config" / "scheduler.yaml"


def _write(tmp_path, data):
    path = tmp_path / "scheduler.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def _minimal(**overrides):
    data = {
        "gateway": {"base_url": "https://gateway.test"},
        "portfolios": {"p1": {"target_allocation": {"A": 0.5, "B": 0.5}}},
    }
    data.update(overrides)
    return data


class TestRepoConfig:
    def test_shipped_config_is_valid(self):
        assert validate_config_file(REPO_CONFIG) == []

    def test_shipped_config_portfolios(self):
        settings = load_settings(REPO_CONFIG)
        hedge = settings.portfolios["momentum-hedge"].to_schedule_config()
        assert hedge["interval_seconds"] == 7200
        assert hedge["min_deviation_threshold"] == 0.08
        assert hedge["short_assets"] == ["LINK"]


class TestSchema:
    def test_defaults_applied(self, tmp_path):
        settings = load_settings(_write(tmp_path, _minimal()))
        assert settings.scheduler.scan_interval_seconds == 1800
        assert settings.scheduler.report_interval_seconds == 21600
        assert settings.retry.max_retries == 3
        assert settings.circuit_breaker.failure_threshold == 5
        assert settings.circuit_breaker.success_threshold == 2
        assert settings.circuit_breaker.cooldown_seconds == 60
        assert settings.circuit_breaker.half_open_max_calls is None
        assert settings.gate.benefit_cost_margin == 2.0
        assert settings.urgency.high_deviation == 0.15
        assert settings.portfolios["p1"].min_deviation_threshold == 0.05

    def test_unknown_keys_ignored(self, tmp_path):
        data = _minimal(extra_section={"x": 1})
        data["portfolios"]["p1"]["color"] = "blue"
        assert validate_config_file(_write(tmp_path, data)) == []

    def test_missing_gateway(self, tmp_path):
        errors = validate_config_file(_write(tmp_path, {"portfolios": {}}))
        assert any("gateway" in e for e in errors)

    def test_negative_weight_reported_with_path(self, tmp_path):
        data = _minimal()
        data["portfolios"]["p1"]["target_allocation"]["A"] = -0.2
        errors = validate_config_file(_write(tmp_path, data))
        assert errors
        assert "portfolios -> p1 -> target_allocation" in errors[0]

    def test_short_asset_not_in_target(self, tmp_path):
        data = _minimal()
        data["portfolios"]["p1"]["short_assets"] = ["C"]
        assert validate_config_file(_write(tmp_path, data))

    def test_band_order(self, tmp_path):
        data = _minimal(urgency={"high_deviation": 0.05, "medium_deviation": 0.1})
        assert validate_config_file(_write(tmp_path, data))

    def test_delay_cap_below_base(self, tmp_path):
        data = _minimal(retry={"base_delay_seconds": 10, "max_delay_seconds": 5})
        assert validate_config_file(_write(tmp_path, data))

    def test_camel_case_portfolio_keys(self, tmp_path):
        data = _minimal()
        data["portfolios"]["p1"] = {
            "targetAllocation": {"A": 1.0},
            "minDeviationThreshold": 0.1,
            "interval": 60_000,
            "riskTolerance": "low",
        }
        settings = load_settings(_write(tmp_path, data))
        config = settings.portfolios["p1"].to_schedule_config()
        assert config["interval_seconds"] == 60
        assert config["min_deviation_threshold"] == 0.1
        assert config["risk_tolerance"] == "low"

    def test_gateway_env_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GW", "https://from-env")
        data = _minimal(gateway={"base_url": "${GW}"})
        settings = load_settings(_write(tmp_path, data))
        assert settings.gateway.base_url == "https://from-env"


class TestLoading:
    def test_missing_file(self, tmp_path):
        errors = validate_config_file(tmp_path / "nope.yaml")
        assert "not found" in errors[0]

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "scheduler.yaml"
        path.write_text("gateway: [unclosed\n")
        errors = validate_config_file(path)
        assert "Invalid YAML" in errors[0]

    def test_load_settings_raises_config_error(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            load_settings(_write(tmp_path, {"portfolios": {}}))
        assert exc_info.value.errors

    def test_load_settings_missing_file(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            load_settings(tmp_path / "nope.yaml")
        assert "not found" in exc_info.value.errors[0]

    def test_load_settings_non_mapping(self, tmp_path):
        path = tmp_path / "scheduler.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="top level must be a mapping"):
            load_settings(path)
