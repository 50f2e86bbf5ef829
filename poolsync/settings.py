from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .errors import ConfigurationError
from .models import VirtualServerConfig


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("POOLSYNC_DB_PATH", "poolsync.db")
    config_path: str = os.getenv("POOLSYNC_CONFIG_PATH", "virtual_servers.json")
    is_leader: bool = _env_bool("POOLSYNC_IS_LEADER", True)

    # Deadlines and retries
    timeout_s: float = _env_float("POOLSYNC_TIMEOUT_S", 10.0)
    sync_timeout_s: float = _env_float("POOLSYNC_SYNC_TIMEOUT_S", 30.0)
    retry_attempts: int = _env_int("POOLSYNC_RETRY_ATTEMPTS", 5)
    retry_delay_s: float = _env_float("POOLSYNC_RETRY_DELAY_S", 15.0)
    gateway_retry_delay_s: float = _env_float("POOLSYNC_GATEWAY_RETRY_DELAY_S", 1.0)
    bootstrap_retry_delay_s: float = _env_float("POOLSYNC_BOOTSTRAP_RETRY_DELAY_S", 1.0)
    # 0 disables the periodic full sync.
    refresh_interval_s: float = _env_float("POOLSYNC_REFRESH_INTERVAL_S", 600.0)

    # Load balancer management API
    lb_api_url: str = os.getenv("POOLSYNC_LB_API_URL", "https://127.0.0.1:8443/rest")
    lb_username: str = os.getenv("POOLSYNC_LB_USERNAME", "admin")
    lb_password: str | None = os.getenv("POOLSYNC_LB_PASSWORD")
    lb_verify_tls: bool = _env_bool("POOLSYNC_LB_VERIFY_TLS", True)

    # Cloud provider and message bus
    aws_region: str = os.getenv("POOLSYNC_AWS_REGION", "us-west-2")
    redis_url: str = os.getenv("POOLSYNC_REDIS_URL", "redis://localhost:6379/0")
    bus_channel: str = os.getenv("POOLSYNC_BUS_CHANNEL", "snsAction")

    # Operator API
    api_host: str = os.getenv("POOLSYNC_API_HOST", "0.0.0.0")
    api_port: int = _env_int("POOLSYNC_API_PORT", 8000)
    api_user: str = os.getenv("POOLSYNC_API_USER", "admin")
    api_password: str | None = os.getenv("POOLSYNC_API_PASSWORD")


settings = Settings()


def parse_virtual_servers(raw: Any) -> list[VirtualServerConfig]:
    """Validate the virtual-server list.

    Accepts either a list of objects carrying a ``name`` or an object keyed by
    virtual-server name.
    """
    if isinstance(raw, dict):
        items = [{**(body or {}), "name": name} for name, body in raw.items()]
    elif isinstance(raw, list):
        items = raw
    else:
        raise ConfigurationError("Virtual server configuration must be a list or an object.")

    configs: list[VirtualServerConfig] = []
    seen_prefixes: set[str] = set()
    for item in items:
        try:
            cfg = VirtualServerConfig.model_validate(item)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid virtual server entry: {e}") from e
        if cfg.rs_prefix in seen_prefixes:
            raise ConfigurationError(f"Real server prefix '{cfg.rs_prefix}' is used by more than one virtual server.")
        for other in seen_prefixes:
            # Real server ownership is decided by prefix, so nested prefixes would claim each other's servers.
            if other.startswith(cfg.rs_prefix) or cfg.rs_prefix.startswith(other):
                raise ConfigurationError(f"Real server prefixes '{other}' and '{cfg.rs_prefix}' overlap.")
        seen_prefixes.add(cfg.rs_prefix)
        configs.append(cfg)
    return configs


def load_virtual_servers(path: str | None = None) -> list[VirtualServerConfig]:
    p = path or settings.config_path
    try:
        with open(p, encoding="utf-8") as fh:
            raw = json.load(fh)
    except OSError as e:
        raise ConfigurationError(f"Cannot read virtual server configuration '{p}': {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Virtual server configuration '{p}' is not valid JSON: {e}") from e
    if isinstance(raw, dict) and "virtualServers" in raw:
        raw = raw["virtualServers"]
    return parse_virtual_servers(raw)
