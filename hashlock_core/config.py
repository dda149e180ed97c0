"""
TOML-based configuration for Hashlock nodes.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from hashlock_core.config import load_config
    cfg = load_config("hashlock.toml")

Example file:

    [service]
    custody_address = "0xC0575D1A..."
    enforce_withdraw_deadline = false

    [tokens.native]
    alice = 1000

    [api]
    enabled = true
    port = 8080

    [logging.levels]
    hashlock_storage = "WARNING"
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


@dataclass
class ServiceConfig:
    """Escrow rules.

    ``enforce_withdraw_deadline`` bounds withdrawal to ``now < timelock``.
    Off by default: a receiver may still withdraw after expiry for as long
    as the sender has not cancelled.
    """
    custody_address: str = "hashlock-custody"
    require_balance_check: bool = True
    enforce_withdraw_deadline: bool = False


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    max_body_bytes: int = 65_536


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    path: str = "data/hashlock.db"


@dataclass
class LoggingConfig:
    """Logging settings.  ``levels`` maps logger name -> level override."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None
    levels: dict[str, str] = field(default_factory=dict)


@dataclass
class HashlockConfig:
    """Top-level configuration container.

    ``tokens`` maps token address -> {holder address: genesis balance}.
    Genesis balances are minted only when the node starts on a fresh store.
    """
    service: ServiceConfig = field(default_factory=ServiceConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    tokens: dict[str, dict[str, int]] = field(default_factory=dict)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: str | None = None) -> HashlockConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        HASHLOCK_CUSTODY          -> service.custody_address
        HASHLOCK_STRICT_DEADLINE  -> service.enforce_withdraw_deadline
        HASHLOCK_HOST             -> api.host
        HASHLOCK_API_PORT         -> api.port (and enables the API)
        HASHLOCK_API_KEY          -> api.api_key
        HASHLOCK_DB_PATH          -> storage.path (and enables storage)
        HASHLOCK_LOG_LEVEL        -> logging.level
        HASHLOCK_LOG_FMT          -> logging.format
    """
    cfg = HashlockConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("service", cfg.service),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])
            for token, holders in data.get("tokens", {}).items():
                cfg.tokens[token] = {addr: int(amt) for addr, amt in holders.items()}

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("HASHLOCK_CUSTODY"):
        cfg.service.custody_address = v
    if v := os.environ.get("HASHLOCK_STRICT_DEADLINE"):
        cfg.service.enforce_withdraw_deadline = _as_bool(v)
    if v := os.environ.get("HASHLOCK_HOST"):
        cfg.api.host = v
    if v := os.environ.get("HASHLOCK_API_PORT"):
        cfg.api.port = int(v)
        cfg.api.enabled = True
    if v := os.environ.get("HASHLOCK_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("HASHLOCK_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True
    if v := os.environ.get("HASHLOCK_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("HASHLOCK_LOG_FMT"):
        cfg.logging.format = v

    return cfg
