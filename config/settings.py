"""
Configuration loader for the outbound action queue.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./outbound_queue.db"        # postgresql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    enabled: bool = False               # periodic scanner is off unless switched on
    interval_seconds: int = 300         # seconds between scheduled ticks
    batch_size: int = 20                # jobs selected per tick
    max_retries: int = 5                # attempts before a job is dead-lettered
    stuck_after_minutes: int = 30       # processing rows older than this raise an alarm
    default_rate_limit_cooldown: int = 3600


@dataclass
class PlatformConfig:
    base_url: str = "https://graph.facebook.com/v23.0"
    single_step_timeout: float = 10.0
    multi_step_timeout: float = 15.0


@dataclass
class RecordsConfig:
    backend: str = "memory"             # "memory" | "rest"
    base_url: str = ""
    auth_token: str = ""


@dataclass
class Settings:
    app_name: str = "OutboundActionQueue"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    platform: PlatformConfig = field(default_factory=PlatformConfig)
    records: RecordsConfig = field(default_factory=RecordsConfig)
    credentials: dict[str, dict[str, str]] = field(default_factory=dict)


_settings: Optional[Settings] = None


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


def _as_bool(value: Any) -> bool:
    # "${OUTBOUND_QUEUE_ENABLED}" arrives as a string after substitution
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "OUTBOUND_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug", settings.debug))

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "queue" in raw:
            q = raw["queue"]
            settings.queue = QueueConfig(
                enabled=_as_bool(q.get("enabled", False)),
                interval_seconds=int(q.get("interval_seconds", 300)),
                batch_size=int(q.get("batch_size", 20)),
                max_retries=int(q.get("max_retries", 5)),
                stuck_after_minutes=int(q.get("stuck_after_minutes", 30)),
                default_rate_limit_cooldown=int(q.get("default_rate_limit_cooldown", 3600)),
            )

        if "platform" in raw:
            p = raw["platform"]
            settings.platform = PlatformConfig(
                base_url=p.get("base_url", settings.platform.base_url),
                single_step_timeout=float(p.get("single_step_timeout", 10.0)),
                multi_step_timeout=float(p.get("multi_step_timeout", 15.0)),
            )

        if "records" in raw:
            r = raw["records"]
            settings.records = RecordsConfig(
                backend=r.get("backend", "memory"),
                base_url=r.get("base_url", ""),
                auth_token=r.get("auth_token", ""),
            )

        for dest_id, creds in (raw.get("credentials") or {}).items():
            settings.credentials[str(dest_id)] = {
                "account_ref": str(creds.get("account_ref", "")),
                "access_token": str(creds.get("access_token", "")),
            }

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
