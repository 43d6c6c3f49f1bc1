"""
Configuration models for the OKX cash-and-carry engine.

Uses Pydantic for validation and type safety. Values come from
``config.yaml`` with ``${VAR}`` expansion, then environment overrides
(nested with ``__``, e.g. ``EXECUTION__SETTLE_DELAY_SECONDS=3``).
"""
from typing import Any, Dict, List, Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import os
import re
import yaml
from pathlib import Path
from decimal import Decimal

from cashcarry.constants import OKX_BASE_URL
from cashcarry.exceptions import ConfigurationError

CONFIG_SCHEMA_VERSION = "2026-10-01"

_ENV_PATTERN = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')


class SystemConfig(BaseSettings):
    """Process-level settings."""
    model_config = SettingsConfigDict(extra="ignore")

    dry_run: bool = Field(default=True, description="Scan and log decisions without placing orders")
    state_dir: str = Field(default="data", description="Directory for kill switch and journal files")


class ExchangeConfig(BaseSettings):
    """OKX gateway configuration. Held by each client instance, never global."""
    model_config = SettingsConfigDict(extra="ignore")

    # Direct OKX host or a local signing proxy
    base_url: str = OKX_BASE_URL
    api_key: Optional[str] = None
    secret_key: Optional[str] = None
    passphrase: Optional[str] = None
    simulated: bool = Field(default=True, description="Send x-simulated-trading: 1 (demo trading)")
    request_timeout_seconds: float = Field(default=30.0, ge=1.0, le=120.0)

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.secret_key and self.passphrase)


class ExecutionConfig(BaseSettings):
    """Hedge execution tuning."""
    model_config = SettingsConfigDict(extra="ignore")

    # Each leg gets this share of the budget; the rest absorbs fees and slippage
    side_budget_fraction: Decimal = Field(default=Decimal("0.48"), gt=0, le=Decimal("0.5"))
    taker_fee_rate: Decimal = Field(default=Decimal("0.001"), ge=0, lt=Decimal("0.05"))
    leverage: str = Field(default="1", description="Swap leverage set before each entry")
    margin_mode: Literal["cross", "isolated"] = "cross"

    poll_retries: int = Field(default=10, ge=1, le=100, description="Spot fill status reads")
    poll_interval_seconds: float = Field(default=0.5, ge=0.0, le=10.0)
    settle_delay_seconds: float = Field(default=2.0, ge=0.0, le=30.0, description="Wait before hedge verification")

    max_hedge_deviation: Decimal = Field(default=Decimal("0.05"), gt=0, lt=1, description="Emergency unwind above this")
    noise_floor_contracts: int = Field(default=5, ge=0, description="Skip deviation checks below ctVal x this")
    audit_emergency_deviation: Decimal = Field(default=Decimal("0.5"), gt=0, le=1)
    sweep_dust_on_exit: bool = False


class ScannerConfig(BaseSettings):
    """Market scanner settings."""
    model_config = SettingsConfigDict(extra="ignore")

    quote_ccy: str = "USDT"
    prefix_limit: int = Field(default=30, ge=1, le=500, description="Top-by-turnover prefix for rate lookups")
    target_count: int = Field(default=10, ge=1, le=100, description="Stop after this many qualifying candidates")
    rate_batch_size: int = Field(default=5, ge=1, le=50, description="Concurrent funding-rate lookups")
    watchlist_size: int = Field(default=20, ge=1, le=200)


class OracleConfig(BaseSettings):
    """Advisory sentiment oracle (DeepSeek-compatible chat completions)."""
    model_config = SettingsConfigDict(extra="ignore")

    api_key: Optional[str] = None
    base_url: str = "https://api.deepseek.com"
    model: str = "deepseek-chat"
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)
    max_candidates: int = Field(default=10, ge=1, le=50)


class SchedulerConfig(BaseSettings):
    """Strategy scheduler timing."""
    model_config = SettingsConfigDict(extra="ignore")

    tick_seconds: float = Field(default=2.0, ge=0.1, le=3.0)
    audit_each_cycle: bool = True
    account_refresh_seconds: float = Field(default=30.0, ge=1.0, le=3600.0)


class StrategyParams(BaseSettings):
    """
    Tunable thresholds for one strategy.

    Unknown keys are collected in ``extra`` so newer config files still load.
    """
    model_config = SettingsConfigDict(extra="ignore")

    min_funding_rate: Decimal = Field(default=Decimal("0.0003"), ge=0, description="Entry threshold per period")
    min_volume_24h: Decimal = Field(default=Decimal("10000000"), ge=0, description="Minimum quote turnover")
    rotation_threshold: Decimal = Field(default=Decimal("0.0002"), ge=0)
    exit_threshold: Decimal = Field(default=Decimal("0.0001"))
    allocation_pct: Decimal = Field(default=Decimal("30"), gt=0, le=100)
    max_positions: int = Field(default=3, ge=1, le=50)
    use_oracle: bool = True
    scan_interval_seconds: int = Field(default=60, ge=1)
    extra: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def collect_extra(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        extra = dict(data.get("extra") or {})
        for key in list(data):
            if key not in known:
                extra[key] = data[key]
        cleaned = {k: v for k, v in data.items() if k in known}
        cleaned["extra"] = extra
        return cleaned

    @model_validator(mode="after")
    def validate_thresholds(self) -> "StrategyParams":
        if self.exit_threshold > self.min_funding_rate:
            raise ValueError("exit_threshold must not exceed min_funding_rate")
        return self


class StrategyConfig(BaseSettings):
    """One configured strategy."""
    model_config = SettingsConfigDict(extra="ignore")

    id: str
    name: str = ""
    active: bool = True
    params: StrategyParams = Field(default_factory=StrategyParams)

    @model_validator(mode="after")
    def default_name(self) -> "StrategyConfig":
        if not self.name:
            self.name = self.id
        return self


class MonitoringConfig(BaseSettings):
    """Logging, alerting and health settings."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None
    alert_webhook_url: Optional[str] = None
    alert_chat_id: Optional[str] = None
    alert_cooldown_seconds: int = Field(default=300, ge=0)
    health_port: int = Field(default=8080, ge=1, le=65535)


class StorageConfig(BaseSettings):
    """Hedge event journal."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: str = "sqlite:///data/cashcarry.db"
    enabled: bool = True


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    system: SystemConfig = Field(default_factory=SystemConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    strategies: List[StrategyConfig] = Field(default_factory=list)
    environment: Literal["dev", "demo", "prod"] = "dev"

    @field_validator("strategies")
    @classmethod
    def unique_strategy_ids(cls, v: List[StrategyConfig]) -> List[StrategyConfig]:
        ids = [s.id for s in v]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate strategy ids: {ids}")
        return v

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, "")

        config_dict = yaml.safe_load(_ENV_PATTERN.sub(replace_match, raw_content)) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        return cls(**_drop_blank(config_dict))


def _drop_blank(value: Any) -> Any:
    """Remove keys whose value expanded to nothing so defaults apply."""
    if isinstance(value, dict):
        return {k: _drop_blank(v) for k, v in value.items() if v not in ("", None)}
    if isinstance(value, list):
        return [_drop_blank(v) for v in value]
    return value


def fail_fast_startup(config: Config) -> None:
    """
    Refuse to start live trading without what it needs.

    Raises:
        ConfigurationError: when credentials are missing for a non-dry-run
            process, or when a live (non-simulated) account is used outside prod.
    """
    from cashcarry.monitoring.logger import get_logger
    logger = get_logger(__name__)

    errors = []
    if not config.system.dry_run and not config.exchange.has_credentials:
        errors.append("OKX_API_KEY / OKX_API_SECRET / OKX_PASSPHRASE required when dry_run is off")
    if not config.exchange.simulated and config.environment != "prod":
        errors.append(f"Live (non-simulated) trading requested with ENVIRONMENT={config.environment}")
    if any(s.params.use_oracle for s in config.strategies if s.active) and not config.oracle.api_key:
        logger.warning("Oracle enabled but ORACLE_API_KEY not set; entries will be skipped")

    if errors:
        logger.critical("STARTUP_VALIDATION_FAILED", errors=errors)
        raise ConfigurationError("; ".join(errors))

    logger.info(
        "STARTUP_VALIDATION_PASSED",
        environment=config.environment,
        mode="dry_run" if config.system.dry_run else "live",
        simulated=config.exchange.simulated,
        strategies=[s.id for s in config.strategies if s.active],
    )


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses cashcarry/config/config.yaml

    Raises:
        FileNotFoundError: If config file not found
        pydantic.ValidationError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"
    return Config.from_yaml(config_path)
