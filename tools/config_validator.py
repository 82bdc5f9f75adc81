"""
Configuration Validation Module

Validates scheduler.yaml against Pydantic schemas and turns it into typed
settings for the runner. Ensures the config file is correct before startup.

Usage:
    from tools.config_validator import validate_config_file

    errors = validate_config_file("config/scheduler.yaml")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the configuration file cannot be loaded or is invalid."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid configuration")


# ===== Scheduler Schema =====
class SchedulerSettings(BaseModel):
    """Scan and reporting cadence"""
    scan_interval_seconds: float = Field(default=1800.0, gt=0, description="Seconds between scans")
    report_interval_seconds: float = Field(default=21600.0, gt=0, description="Seconds between reports")
    status_window_seconds: float = Field(default=86400.0, gt=0, description="Window for recent counts")
    max_concurrency: Optional[int] = Field(default=None, gt=0, description="Max portfolios processed at once")
    run_immediately: bool = Field(default=False, description="Tick once as soon as the loop starts")


class RetrySettings(BaseModel):
    """Retry policy for external calls"""
    max_retries: int = Field(default=3, ge=1, description="Total attempts per call")
    base_delay_seconds: float = Field(default=1.0, ge=0, description="First backoff delay")
    max_delay_seconds: float = Field(default=30.0, ge=0, description="Backoff cap before jitter")
    jitter_seconds: float = Field(default=1.0, ge=0, description="Upper bound of random jitter")
    timeout_seconds: Optional[float] = Field(default=30.0, gt=0, description="Per-attempt timeout")

    @field_validator("max_delay_seconds")
    @classmethod
    def validate_delay_cap(cls, v: float, info) -> float:
        """Ensure max_delay_seconds >= base_delay_seconds"""
        base = info.data.get("base_delay_seconds", 0)
        if v < base:
            raise ValueError(f"max_delay_seconds ({v}) must be >= base_delay_seconds ({base})")
        return v


class BreakerSettings(BaseModel):
    """Circuit breaker parameters (one breaker per operation)"""
    failure_threshold: int = Field(default=5, ge=1, description="Failures that open the circuit")
    success_threshold: int = Field(default=2, ge=1, description="Half-open successes that close it")
    cooldown_seconds: float = Field(default=60.0, gt=0, description="Open duration before trial calls")
    failure_window_seconds: Optional[float] = Field(default=None, gt=0, description="Failure streak window")
    half_open_max_calls: Optional[int] = Field(default=None, ge=1, description="Concurrent half-open trial calls (default: success_threshold)")


class GateSettings(BaseModel):
    """Cost model and cost-benefit gate"""
    cost_rate: float = Field(default=0.001, ge=0, description="Cost per unit traded")
    improvement_rate: float = Field(default=0.02, ge=0, description="Improvement per unit traded")
    volume_factor: float = Field(default=0.5, gt=0, description="Share of drift that is traded")
    benefit_cost_margin: float = Field(default=2.0, gt=0, description="Required benefit/cost ratio")


class UrgencySettings(BaseModel):
    """Urgency bands"""
    high_deviation: float = Field(default=0.15, gt=0, le=1)
    medium_deviation: float = Field(default=0.10, gt=0, le=1)
    volatility_promotion: float = Field(default=0.25, ge=0, le=1)

    @model_validator(mode="after")
    def validate_band_order(self) -> "UrgencySettings":
        if self.medium_deviation > self.high_deviation:
            raise ValueError(
                f"medium_deviation ({self.medium_deviation}) must be <= high_deviation ({self.high_deviation})"
            )
        return self


class MetricsSettings(BaseModel):
    """Rebalance history and Prometheus exporter"""
    enabled: bool = Field(default=False, description="Start the Prometheus exporter")
    port: int = Field(default=9100, gt=0, lt=65536)
    max_records: int = Field(default=10000, gt=0, description="History length cap")
    retention_seconds: Optional[float] = Field(default=None, gt=0, description="History age cap")
    max_errors: int = Field(default=100, gt=0, description="Error log length cap")


class AlertSettings(BaseModel):
    """Webhook alerting"""
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=300.0, ge=0)
    min_success_rate: float = Field(default=0.8, ge=0, le=1)


class HealthSettings(BaseModel):
    enabled: bool = False
    port: int = Field(default=8090, ge=0, lt=65536)


class GatewaySettings(BaseModel):
    """Chain gateway HTTP endpoint"""
    base_url: str = Field(min_length=1, description="Gateway base URL, ${VAR} expanded")
    api_key: Optional[str] = Field(default=None, description="Bearer token, ${VAR} expanded")
    request_timeout_seconds: float = Field(default=20.0, gt=0)

    @field_validator("base_url", "api_key")
    @classmethod
    def expand_env(cls, v: Optional[str]) -> Optional[str]:
        if v and "${" in v:
            return os.path.expandvars(v)
        return v


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = None

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class PortfolioSettings(BaseModel):
    """One managed portfolio. camelCase keys are accepted."""
    target_allocation: Dict[str, float] = Field(
        validation_alias=AliasChoices("target_allocation", "targetAllocation"),
    )
    min_deviation_threshold: float = Field(
        default=0.05,
        ge=0,
        lt=1,
        validation_alias=AliasChoices(
            "min_deviation_threshold", "minDeviationThreshold", "minRebalanceThreshold"
        ),
    )
    interval_seconds: Optional[float] = Field(default=None, gt=0)
    interval_millis: Optional[float] = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("interval_millis", "intervalMillis", "interval"),
    )
    risk_tolerance: str = Field(
        default="medium", validation_alias=AliasChoices("risk_tolerance", "riskTolerance")
    )
    strategy: Optional[str] = None
    short_assets: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("short_assets", "shortAssets")
    )
    start_delay_seconds: float = Field(default=0.0, ge=0)

    @field_validator("target_allocation")
    @classmethod
    def validate_weights(cls, v: Dict[str, float]) -> Dict[str, float]:
        """Weights must be non-negative and the allocation non-empty"""
        if not v:
            raise ValueError("target_allocation must not be empty")
        for asset, weight in v.items():
            if weight < 0:
                raise ValueError(f"Asset {asset} weight must be >= 0, got {weight}")
        return v

    @model_validator(mode="after")
    def validate_shorts(self) -> "PortfolioSettings":
        unknown = sorted(set(self.short_assets) - set(self.target_allocation))
        if unknown:
            raise ValueError(f"short_assets not in target_allocation: {unknown}")
        return self

    def to_schedule_config(self) -> Dict[str, Any]:
        """Mapping accepted by RebalancingScheduler.add_portfolio."""
        interval = self.interval_seconds
        if interval is None and self.interval_millis is not None:
            interval = self.interval_millis / 1000.0
        config: Dict[str, Any] = {
            "target_allocation": dict(self.target_allocation),
            "min_deviation_threshold": self.min_deviation_threshold,
            "risk_tolerance": self.risk_tolerance,
            "strategy": self.strategy,
            "short_assets": list(self.short_assets),
            "start_delay_seconds": self.start_delay_seconds,
        }
        if interval is not None:
            config["interval_seconds"] = interval
        return config


class AppSettings(BaseModel):
    """Complete scheduler.yaml schema"""
    gateway: GatewaySettings
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    circuit_breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    gate: GateSettings = Field(default_factory=GateSettings)
    urgency: UrgencySettings = Field(default_factory=UrgencySettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    portfolios: Dict[str, PortfolioSettings] = Field(default_factory=dict)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))
    return data or {}


def _parse(raw: Dict[str, Any], label: str) -> Union[AppSettings, List[str]]:
    try:
        return AppSettings(**raw)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{label}: {field}: {error['msg']}")
        return errors


def _load_and_parse(file_path: Path) -> Union[AppSettings, List[str]]:
    label = file_path.name
    try:
        raw = load_yaml_file(file_path)
    except FileNotFoundError as e:
        return [f"{label}: {e}"]
    except yaml.YAMLError as e:
        return [f"{label}: Invalid YAML - {e}"]

    if not isinstance(raw, dict):
        return [f"{label}: top level must be a mapping"]
    return _parse(raw, label)


def validate_config_file(path: Union[str, Path]) -> List[str]:
    """
    Validate a scheduler config file.

    Returns:
        List of error messages (empty if valid)
    """
    file_path = Path(path)
    result = _load_and_parse(file_path)
    if isinstance(result, list):
        logger.error("❌ %d validation error(s) found in %s", len(result), file_path.name)
        return result
    logger.info("✅ %s validation passed", file_path.name)
    return []


def load_settings(path: Union[str, Path]) -> AppSettings:
    """
    Load and validate a scheduler config file.

    Raises:
        ConfigError: with every validation error found
    """
    result = _load_and_parse(Path(path))
    if isinstance(result, list):
        raise ConfigError(result)
    return result


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_file = sys.argv[1] if len(sys.argv) > 1 else "config/scheduler.yaml"
    errors = validate_config_file(config_file)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ Configuration file is valid!\n")
        sys.exit(0)
