"""
Configuration loader for the message gateway.
Reads settings from a YAML file with environment variable substitution,
then applies the flat environment overrides the gateway has always honoured
(GATEWAY_SECRET, WORKER_POLL_INTERVAL_MS, FREE_MAX_PER_HOUR, ...).
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from models.schemas import RateTier


@dataclass
class WorkerConfig:
    enabled: bool = True
    poll_interval_ms: int = 2000
    batch_size: int = 10
    max_jobs_per_cycle: int = 1          # jobs taken to completion per tick
    max_attempts: int = 5
    base_backoff_seconds: int = 30
    max_backoff_seconds: int = 1800
    worker_id: str = "gateway-worker"


@dataclass
class TierLimits:
    min_interval_seconds: int = 0
    max_per_hour: int = 2


@dataclass
class RateLimitConfig:
    free: TierLimits = field(default_factory=lambda: TierLimits(0, 2))
    paid: TierLimits = field(default_factory=lambda: TierLimits(0, 30))

    def for_tier(self, tier: RateTier) -> TierLimits:
        return self.paid if tier == RateTier.PAID else self.free


@dataclass
class ReceiptConfig:
    enabled: bool = True
    chat_db_path: str = "~/Library/Messages/chat.db"
    correlation_attempts: int = 8
    correlation_delay_ms: int = 2000
    poll_interval_ms: int = 10_000
    poll_timeout_ms: int = 30 * 60 * 1000


@dataclass
class GatewayConfig:
    secret: str = ""
    port: int = 4001
    web_base_url: str = "http://localhost:3000"
    version: str = "0.1.0"
    callback_timeout_s: float = 10.0


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./gateway.db"               # postgresql:// | mysql:// | sqlite://
    store_backend: str = "sql"                         # "sql" | "memory"


@dataclass
class Settings:
    app_name: str = "MessageGateway"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = False
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    receipts: ReceiptConfig = field(default_factory=ReceiptConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


_settings: Optional[Settings] = None

_UNRESOLVED = re.compile(r'\$\{\w+\}')


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _number(name: str, value: Any, cast=int):
    """Coerce a config value, raising the gateway's usual message when it isn't numeric."""
    try:
        return cast(float(value)) if cast is int else cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number.") from None


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _tier(raw: dict[str, Any], default: TierLimits) -> TierLimits:
    return TierLimits(
        min_interval_seconds=_number(
            "min_interval_seconds", raw.get("min_interval_seconds", default.min_interval_seconds)),
        max_per_hour=_number("max_per_hour", raw.get("max_per_hour", default.max_per_hour)),
    )


# Flat env var → (section, attribute, kind)
_ENV_OVERRIDES: dict[str, tuple[str, str, str]] = {
    "GATEWAY_SECRET": ("gateway", "secret", "str"),
    "GATEWAY_PORT": ("gateway", "port", "int"),
    "WEB_BASE_URL": ("gateway", "web_base_url", "str"),
    "GATEWAY_VERSION": ("gateway", "version", "str"),
    "WORKER_ENABLED": ("worker", "enabled", "bool"),
    "WORKER_POLL_INTERVAL_MS": ("worker", "poll_interval_ms", "int"),
    "WORKER_BATCH_SIZE": ("worker", "batch_size", "int"),
    "WORKER_MAX_JOBS_PER_CYCLE": ("worker", "max_jobs_per_cycle", "int"),
    "MAX_ATTEMPTS": ("worker", "max_attempts", "int"),
    "BASE_BACKOFF_SECONDS": ("worker", "base_backoff_seconds", "int"),
    "MAX_BACKOFF_SECONDS": ("worker", "max_backoff_seconds", "int"),
    "CHAT_DB_PATH": ("receipts", "chat_db_path", "str"),
    "RECEIPTS_ENABLED": ("receipts", "enabled", "bool"),
    "CORRELATION_RETRY_ATTEMPTS": ("receipts", "correlation_attempts", "int"),
    "CORRELATION_RETRY_DELAY_MS": ("receipts", "correlation_delay_ms", "int"),
    "RECEIPT_POLL_INTERVAL_MS": ("receipts", "poll_interval_ms", "int"),
    "RECEIPT_POLL_TIMEOUT_MS": ("receipts", "poll_timeout_ms", "int"),
    "DATABASE_URL": ("database", "url", "str"),
    "STORE_BACKEND": ("database", "store_backend", "str"),
}

_TIER_OVERRIDES: dict[str, tuple[str, str]] = {
    "FREE_MIN_INTERVAL_SECONDS": ("free", "min_interval_seconds"),
    "PAID_MIN_INTERVAL_SECONDS": ("paid", "min_interval_seconds"),
    "FREE_MAX_PER_HOUR": ("free", "max_per_hour"),
    "PAID_MAX_PER_HOUR": ("paid", "max_per_hour"),
}


def apply_env_overrides(settings: Settings, environ: Optional[dict[str, str]] = None) -> Settings:
    """Overlay flat environment variables onto loaded settings (env wins over YAML)."""
    environ = os.environ if environ is None else environ

    for var, (section, attr, kind) in _ENV_OVERRIDES.items():
        if var not in environ or environ[var] == "":
            continue
        raw = environ[var]
        if kind == "int":
            value: Any = _number(var, raw)
        elif kind == "bool":
            value = _flag(raw)
        else:
            value = raw
        setattr(getattr(settings, section), attr, value)

    for var, (tier, attr) in _TIER_OVERRIDES.items():
        if var in environ and environ[var] != "":
            setattr(getattr(settings.rate_limit, tier), attr, _number(var, environ[var]))

    if environ.get("LOG_LEVEL"):
        settings.log_level = environ["LOG_LEVEL"].upper()

    return settings


def load_settings(config_path: str = None, environ: Optional[dict[str, str]] = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    if config_path is None:
        config_path = (environ if environ is not None else os.environ).get(
            "GATEWAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _flag(raw.get("debug", settings.debug))
        settings.log_level = str(raw.get("log_level", settings.log_level)).upper()
        settings.log_json = _flag(raw.get("log_json", settings.log_json))

        if "gateway" in raw:
            gw = raw["gateway"] or {}
            secret = str(gw.get("secret") or "")
            if _UNRESOLVED.fullmatch(secret):
                secret = ""   # ${GATEWAY_SECRET} with nothing in the environment
            settings.gateway = GatewayConfig(
                secret=secret,
                port=_number("gateway.port", gw.get("port", 4001)),
                web_base_url=gw.get("web_base_url", "http://localhost:3000"),
                version=str(gw.get("version", "0.1.0")),
                callback_timeout_s=_number(
                    "gateway.callback_timeout_s", gw.get("callback_timeout_s", 10.0), float),
            )

        if "worker" in raw:
            w = raw["worker"] or {}
            settings.worker = WorkerConfig(
                enabled=_flag(w.get("enabled", True)),
                poll_interval_ms=_number("worker.poll_interval_ms", w.get("poll_interval_ms", 2000)),
                batch_size=_number("worker.batch_size", w.get("batch_size", 10)),
                max_jobs_per_cycle=_number(
                    "worker.max_jobs_per_cycle", w.get("max_jobs_per_cycle", 1)),
                max_attempts=_number("worker.max_attempts", w.get("max_attempts", 5)),
                base_backoff_seconds=_number(
                    "worker.base_backoff_seconds", w.get("base_backoff_seconds", 30)),
                max_backoff_seconds=_number(
                    "worker.max_backoff_seconds", w.get("max_backoff_seconds", 1800)),
                worker_id=w.get("worker_id", "gateway-worker"),
            )

        if "rate_limit" in raw:
            rl = raw["rate_limit"] or {}
            settings.rate_limit = RateLimitConfig(
                free=_tier(rl.get("free") or {}, TierLimits(0, 2)),
                paid=_tier(rl.get("paid") or {}, TierLimits(0, 30)),
            )

        if "receipts" in raw:
            r = raw["receipts"] or {}
            settings.receipts = ReceiptConfig(
                enabled=_flag(r.get("enabled", True)),
                chat_db_path=r.get("chat_db_path", "~/Library/Messages/chat.db"),
                correlation_attempts=_number(
                    "receipts.correlation_attempts", r.get("correlation_attempts", 8)),
                correlation_delay_ms=_number(
                    "receipts.correlation_delay_ms", r.get("correlation_delay_ms", 2000)),
                poll_interval_ms=_number("receipts.poll_interval_ms", r.get("poll_interval_ms", 10_000)),
                poll_timeout_ms=_number(
                    "receipts.poll_timeout_ms", r.get("poll_timeout_ms", 30 * 60 * 1000)),
            )

        if "database" in raw:
            db = raw["database"] or {}
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

    apply_env_overrides(settings, environ)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
