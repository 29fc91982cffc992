"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas, then runs
cross-field sanity checks. Startup aborts when anything is reported.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

KNOWN_PROVIDERS = {"alpha_vantage", "finnhub", "fmp", "yahoo"}
KNOWN_JOBS = {
    "quote_refresh",
    "decision_refresh",
    "risk_refresh",
    "market_open",
    "market_close",
    "volatility_recompute",
    "history_backfill",
}
HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


# ===== Policy Schema =====
class GatewayConfig(BaseModel):
    """Market data gateway parameters"""
    cache_ttl_seconds: float = Field(default=20.0, gt=0, description="Quote freshness window")
    cache_capacity: int = Field(default=1000, gt=0, description="Max cached symbols")
    retry_attempts: int = Field(default=3, ge=1, le=10, description="Attempts per provider")
    retry_base_delay_seconds: float = Field(default=0.5, ge=0, description="Backoff base delay")
    failure_threshold: int = Field(default=5, ge=1, description="Failures before a breaker opens")
    cooldown_seconds: float = Field(default=60.0, gt=0, description="Breaker cool-down")
    request_timeout_seconds: float = Field(default=5.0, gt=0, le=60, description="Per-request HTTP timeout")
    history_days: int = Field(default=90, ge=2, le=365, description="Daily bars fetched per quote")


class ProviderConfig(BaseModel):
    """One market data provider, in priority order"""
    name: str
    api_key_env: Optional[str] = Field(default=None, description="Env var holding the API key")
    enabled: bool = True
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=60)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if v not in KNOWN_PROVIDERS:
            raise ValueError(f"unknown provider '{v}', expected one of {sorted(KNOWN_PROVIDERS)}")
        return v


class WindowConfig(BaseModel):
    """Active trading window"""
    timezone: str = "America/New_York"
    open: str = Field(default="09:30", pattern=HHMM_PATTERN)
    close: str = Field(default="16:00", pattern=HHMM_PATTERN)
    days: List[str] = Field(default_factory=lambda: ["mon", "tue", "wed", "thu", "fri"], min_length=1)

    @field_validator("days")
    @classmethod
    def validate_days(cls, v: List[str]) -> List[str]:
        allowed = {"mon", "tue", "wed", "thu", "fri", "sat", "sun"}
        bad = [day for day in v if day.lower()[:3] not in allowed]
        if bad:
            raise ValueError(f"invalid day names: {bad}")
        return v

    @model_validator(mode="after")
    def validate_order(self) -> "WindowConfig":
        if self.open >= self.close:
            raise ValueError(f"window open {self.open} must be before close {self.close}")
        return self


class ScheduleConfig(BaseModel):
    """Job triggers and lock parameters"""
    lock_retries: int = Field(default=2, ge=0, le=10)
    lock_retry_delay_seconds: float = Field(default=1.0, ge=0)
    lock_ttl_seconds: Dict[str, float] = Field(default_factory=lambda: {"default": 300.0})
    triggers: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    @field_validator("lock_ttl_seconds")
    @classmethod
    def validate_ttls(cls, v: Dict[str, float]) -> Dict[str, float]:
        for job, ttl in v.items():
            if job != "default" and job not in KNOWN_JOBS:
                raise ValueError(f"lock TTL for unknown job '{job}'")
            if ttl <= 0:
                raise ValueError(f"lock TTL for {job} must be positive, got {ttl}")
        return v

    @field_validator("triggers")
    @classmethod
    def validate_trigger_names(cls, v: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        unknown = sorted(set(v) - KNOWN_JOBS)
        if unknown:
            raise ValueError(f"triggers for unknown jobs: {unknown}")
        return v


class DecisionConfig(BaseModel):
    """Decision engine thresholds"""
    strong_vs_high: float = Field(default=0.9, gt=0, le=1)
    weak_vs_high: float = Field(default=0.7, gt=0, le=1)
    month_move_pct: float = Field(default=10.0, gt=0)
    buy_score: int = Field(default=2, ge=1)
    sell_score: int = Field(default=-2, le=-1)


class RiskConfig(BaseModel):
    """Risk engine thresholds (percent of portfolio value)"""
    position_warn_pct: float = Field(default=15.0, gt=0, le=100)
    position_max_pct: float = Field(default=20.0, gt=0, le=100)
    concentration_pct: float = Field(default=30.0, gt=0, le=100)
    take_profit_zone: float = Field(default=0.95, gt=0, le=1)
    take_profit_watch: float = Field(default=0.90, gt=0, le=1)


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    providers: List[ProviderConfig] = Field(min_length=1)
    window: WindowConfig = Field(default_factory=WindowConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)


# ===== App Schema =====
class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = "logs/portfolio-signals.log"


class AlertsConfig(BaseModel):
    enabled: bool = True
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dedupe_seconds: float = Field(default=300.0, ge=0)
    timeout_seconds: float = Field(default=5.0, gt=0)
    dry_run: bool = False


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = True
    metrics_port: int = Field(default=9100, gt=0, lt=65536)
    healthcheck_enabled: bool = True
    healthcheck_port: int = Field(default=8090, gt=0, lt=65536)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


class StateConfig(BaseModel):
    positions_file: str = "data/positions.json"
    history_db: str = "data/price_history.db"


class LocksConfig(BaseModel):
    backend: str = Field(default="sqlite", pattern="^(sqlite|memory)$")
    sqlite_path: str = "data/locks.db"


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    locks: LocksConfig = Field(default_factory=LocksConfig)


# ===== Loading =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"
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

    with open(file_path, "r", encoding="utf-8") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema: type) -> List[str]:
    errors: List[str] = []
    try:
        config = load_yaml_file(config_dir / filename)
        if not isinstance(config, dict):
            return [f"{filename}: top level must be a mapping"]
        schema(**config)
        logger.info("%s validation passed", filename)
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{filename}: {field}: {error['msg']}")
    return errors


def validate_policy(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_app(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """Cross-field checks that schemas alone cannot express."""
    errors: List[str] = []
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))

    enabled = [p for p in policy.providers if p.enabled]
    if not enabled:
        errors.append("policy.yaml: providers: at least one provider must be enabled")

    names = [p.name for p in policy.providers]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        errors.append(f"policy.yaml: providers: duplicate entries {duplicates}")

    for provider in enabled:
        if provider.name != "yahoo" and not provider.api_key_env:
            errors.append(f"policy.yaml: providers -> {provider.name}: api_key_env is required")

    if policy.risk.position_warn_pct >= policy.risk.position_max_pct:
        errors.append("policy.yaml: risk: position_warn_pct must be below position_max_pct")
    if policy.risk.take_profit_watch >= policy.risk.take_profit_zone:
        errors.append("policy.yaml: risk: take_profit_watch must be below take_profit_zone")
    if policy.decision.weak_vs_high >= policy.decision.strong_vs_high:
        errors.append("policy.yaml: decision: weak_vs_high must be below strong_vs_high")

    for job, fields in policy.schedule.triggers.items():
        try:
            CronTrigger(timezone=policy.window.timezone, **fields)
        except (TypeError, ValueError) as e:
            errors.append(f"policy.yaml: schedule -> triggers -> {job}: {e}")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors: List[str] = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    # Sanity checks only if schema validation passed
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error("%d validation error(s) found", len(all_errors))

    return all_errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    errors = validate_all_configs(sys.argv[1] if len(sys.argv) > 1 else "config")
    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)
    print("\nAll configuration files are valid!\n")
