"""
Configuration Validation and Loading

Validates app.yaml and policy.yaml against Pydantic schemas, applies
environment overrides and resolves secrets. Ensures config is correct
before the bot starts.

Usage:
    from tools.config_validator import validate_all_configs, load_config

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)

    config = load_config("config")
"""
import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ai.model_client import split_model_spec
from core.exceptions import ConfigurationError
from infra.symbols import is_stablecoin, split_symbol

logger = logging.getLogger(__name__)

MODEL_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

PLACEHOLDER_SECRETS = {"", "your_key_here", "your_secret_here"}


# ===== Policy Schema =====
class RiskConfig(BaseModel):
    """Hard trading limits"""
    max_trade_usd: float = Field(default=20.0, gt=0, description="Per-trade cap in USD")
    daily_loss_limit_usd: float = Field(default=10.0, gt=0, description="Halt after this daily realized loss")
    max_positions: int = Field(default=5, gt=0, description="Max concurrently held symbols")
    concentration_limit_pct: float = Field(default=50.0, gt=0, le=100, description="Max single-asset share")


class DecisionConfig(BaseModel):
    """Oracle decision parameters"""
    confidence_threshold: float = Field(default=70.0, ge=0, le=100)
    reflection_enabled: bool = True
    oracle_timeout_seconds: float = Field(default=60.0, gt=0)
    kline_interval: str = "1h"
    kline_limit: int = Field(default=200, ge=30, le=1000)


class CircuitBreakerConfig(BaseModel):
    """Per-symbol circuit breaker and volatility gate"""
    max_consecutive_errors: int = Field(default=3, gt=0)
    cooldown_seconds: float = Field(default=1800.0, gt=0)
    volatility_threshold_pct: float = Field(default=5.0, gt=0)
    volatility_interval: str = "5m"


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    risk: RiskConfig = Field(default_factory=RiskConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    circuit_breakers: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)


# ===== App Schema =====
class AppSection(BaseModel):
    mode: Literal["paper", "testnet", "live"] = "paper"
    pairs: List[str] = Field(default_factory=lambda: ["BTCUSDT", "ETHUSDT"], min_length=1)
    fast_interval_seconds: float = Field(default=300.0, ge=10)
    slow_interval_seconds: float = Field(default=3600.0, ge=60)

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("pairs")
    @classmethod
    def validate_pairs(cls, v: List[str]) -> List[str]:
        pairs = []
        for raw in v:
            pair = raw.strip().upper()
            if not pair:
                continue
            base, quote = split_symbol(pair)
            if not quote:
                raise ValueError(f"Pair {raw!r} has no quote asset (expected e.g. BTCUSDT)")
            if is_stablecoin(pair):
                raise ValueError(f"Pair {raw!r} is a stablecoin pair")
            if pair not in pairs:
                pairs.append(pair)
        if not pairs:
            raise ValueError("At least one pair is required")
        return pairs


class ModelSection(BaseModel):
    spec: str = "openrouter:qwen/qwen3-235b-a22b"
    temperature: float = Field(default=0.3, ge=0, le=2)

    @field_validator("spec")
    @classmethod
    def validate_spec(cls, v: str) -> str:
        provider, model = split_model_spec(v)
        if provider not in set(MODEL_KEY_ENV) | {"mock"}:
            raise ValueError(f"Unknown model provider {provider!r}")
        if provider != "mock" and not model:
            raise ValueError("Model name missing after provider prefix")
        return v


class ExchangeSection(BaseModel):
    testnet: bool = True
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=3, ge=1, le=10)


class StateSection(BaseModel):
    state_file: str = "data/bot_state.json"
    log_dir: str = "logs"
    recommendations_file: str = "logs/portfolio-recommendations.jsonl"
    lock_dir: str = "data"


class ControlApiSection(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=3847, ge=0, le=65535)
    cors_origin: Optional[str] = "*"


class LoggingSection(BaseModel):
    level: str = "INFO"
    file: str = "logs/bot.log"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level {v!r}")
        return level


class MonitoringSection(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, ge=0, le=65535)
    alerts: Dict[str, Any] = Field(default_factory=dict)


class AppSchema(BaseModel):
    app: AppSection = Field(default_factory=AppSection)
    model: ModelSection = Field(default_factory=ModelSection)
    exchange: ExchangeSection = Field(default_factory=ExchangeSection)
    state: StateSection = Field(default_factory=StateSection)
    control_api: ControlApiSection = Field(default_factory=ControlApiSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)
    monitoring: MonitoringSection = Field(default_factory=MonitoringSection)


class Secrets(BaseModel):
    exchange_api_key: Optional[str] = None
    exchange_api_secret: Optional[str] = None
    model_api_key: Optional[str] = None
    control_api_key: Optional[str] = None

    @property
    def has_exchange_credentials(self) -> bool:
        return bool(self.exchange_api_key and self.exchange_api_secret)


class BotConfig(BaseModel):
    """Validated runtime configuration"""
    app: AppSchema
    policy: PolicySchema
    secrets: Secrets = Field(default_factory=Secrets, repr=False)

    @property
    def mode(self) -> str:
        return self.app.app.mode.upper()

    @property
    def uses_testnet(self) -> bool:
        """testnet mode always uses testnet, live never does, paper follows config."""
        if self.app.app.mode == "testnet":
            return True
        if self.app.app.mode == "live":
            return False
        return self.app.exchange.testnet

    def policy_dict(self) -> Dict[str, Any]:
        return self.policy.model_dump()


# ===== Loading =====
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
            mark = getattr(e, "problem_mark", None)
            where = f" (line {mark.line + 1}, column {mark.column + 1})" if mark else ""
            raise yaml.YAMLError(f"Malformed YAML in {file_path}{where}: {e}")
    return data or {}


def _secret(env: Mapping[str, str], key: str) -> Optional[str]:
    value = (env.get(key) or "").strip()
    return None if value in PLACEHOLDER_SECRETS else value


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def apply_env_overrides(app_raw: Dict[str, Any], policy_raw: Dict[str, Any],
                        env: Mapping[str, str]) -> None:
    """Overlay supported environment variables onto raw config dicts in place."""
    app_section = app_raw.setdefault("app", {})
    risk = policy_raw.setdefault("risk", {})
    decision = policy_raw.setdefault("decision", {})

    if env.get("TRADING_MODE"):
        app_section["mode"] = env["TRADING_MODE"]
    if env.get("BOT_PAIRS"):
        app_section["pairs"] = [p for p in env["BOT_PAIRS"].split(",") if p.strip()]
    if env.get("BOT_CHECK_INTERVAL_MS"):
        app_section["fast_interval_seconds"] = float(env["BOT_CHECK_INTERVAL_MS"]) / 1000.0
    if env.get("BOT_MODEL"):
        app_raw.setdefault("model", {})["spec"] = env["BOT_MODEL"]
    if env.get("BOT_API_PORT"):
        app_raw.setdefault("control_api", {})["port"] = int(env["BOT_API_PORT"])
    if env.get("BINANCE_TESTNET"):
        app_raw.setdefault("exchange", {})["testnet"] = _truthy(env["BINANCE_TESTNET"])
    if env.get("BOT_MAX_TRADE_USD"):
        risk["max_trade_usd"] = float(env["BOT_MAX_TRADE_USD"])
    if env.get("BOT_DAILY_LOSS_LIMIT_USD"):
        risk["daily_loss_limit_usd"] = float(env["BOT_DAILY_LOSS_LIMIT_USD"])
    if env.get("BOT_CONFIDENCE_THRESHOLD"):
        decision["confidence_threshold"] = float(env["BOT_CONFIDENCE_THRESHOLD"])


def _format_validation_error(file_name: str, error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        field = " -> ".join(str(loc) for loc in item["loc"])
        messages.append(f"{file_name}: {field}: {item['msg']}")
    return messages


def load_config(config_dir: str = "config", env: Optional[Mapping[str, str]] = None,
                require_secrets: bool = True) -> BotConfig:
    """
    Load, override, validate and resolve secrets.

    Raises:
        ConfigurationError: invalid config, or a mode/provider that needs
            credentials which are not present
    """
    env = os.environ if env is None else env
    config_path = Path(config_dir)
    try:
        app_raw = copy.deepcopy(load_yaml_file(config_path / "app.yaml"))
        policy_raw = copy.deepcopy(load_yaml_file(config_path / "policy.yaml"))
        apply_env_overrides(app_raw, policy_raw, env)
        app = AppSchema(**app_raw)
        policy = PolicySchema(**policy_raw)
    except (FileNotFoundError, yaml.YAMLError, ValueError) as e:
        if isinstance(e, ValidationError):
            raise ConfigurationError("; ".join(_format_validation_error("config", e))) from e
        raise ConfigurationError(str(e)) from e

    provider, _ = split_model_spec(app.model.spec)
    secrets = Secrets(
        exchange_api_key=_secret(env, "BINANCE_API_KEY"),
        exchange_api_secret=_secret(env, "BINANCE_API_SECRET"),
        model_api_key=_secret(env, MODEL_KEY_ENV[provider]) if provider in MODEL_KEY_ENV else None,
        control_api_key=_secret(env, "BOT_API_KEY"),
    )
    config = BotConfig(app=app, policy=policy, secrets=secrets)

    if require_secrets:
        if config.mode in ("TESTNET", "LIVE") and not secrets.has_exchange_credentials:
            raise ConfigurationError(
                f"{config.mode} mode requires BINANCE_API_KEY and BINANCE_API_SECRET"
            )
        if provider in MODEL_KEY_ENV and not secrets.model_api_key:
            raise ConfigurationError(
                f"Model provider {provider!r} requires {MODEL_KEY_ENV[provider]}"
            )

    logger.info(
        f"Loaded config: mode={config.mode}, pairs={app.app.pairs}, model={app.model.spec}"
    )
    return config


# ===== Validation =====
def validate_policy(config_dir: Path) -> List[str]:
    errors = []
    try:
        PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))
        logger.info("policy.yaml validation passed")
    except FileNotFoundError as e:
        errors.append(f"policy.yaml: {e}")
    except yaml.YAMLError as e:
        errors.append(f"policy.yaml: Invalid YAML - {e}")
    except ValidationError as e:
        errors.extend(_format_validation_error("policy.yaml", e))
    return errors


def validate_app(config_dir: Path) -> List[str]:
    errors = []
    try:
        AppSchema(**load_yaml_file(config_dir / "app.yaml"))
        logger.info("app.yaml validation passed")
    except FileNotFoundError as e:
        errors.append(f"app.yaml: {e}")
    except yaml.YAMLError as e:
        errors.append(f"app.yaml: Invalid YAML - {e}")
    except ValidationError as e:
        errors.extend(_format_validation_error("app.yaml", e))
    return errors


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """Cross-field checks that the schemas cannot express."""
    errors: List[str] = []
    try:
        app = AppSchema(**load_yaml_file(config_dir / "app.yaml"))
        policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))
    except (FileNotFoundError, yaml.YAMLError, ValidationError):
        return errors

    if app.app.slow_interval_seconds < app.app.fast_interval_seconds:
        errors.append(
            f"INCONSISTENT: slow_interval_seconds ({app.app.slow_interval_seconds}) is shorter "
            f"than fast_interval_seconds ({app.app.fast_interval_seconds})"
        )
    if policy.risk.daily_loss_limit_usd < policy.risk.max_trade_usd * 0.1:
        logger.warning(
            "daily_loss_limit_usd (%.2f) is tiny relative to max_trade_usd (%.2f); "
            "the loop will halt after a single small loss",
            policy.risk.daily_loss_limit_usd, policy.risk.max_trade_usd,
        )
    if app.app.mode == "live" and app.exchange.testnet:
        logger.warning("exchange.testnet is ignored in live mode; production endpoints are used")
    if len(app.app.pairs) > policy.risk.max_positions:
        logger.warning(
            "%d pairs configured but max_positions is %d", len(app.app.pairs), policy.risk.max_positions
        )
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)
    all_errors: List[str] = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} validation error(s) found")
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
