"""Provider and database configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
import math
import os


DEFAULT_API_BASE = "https://api.stripe.com"
DEFAULT_API_VERSION = "2020-08-27"


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the PostgreSQL store."""

    host: str
    port: int
    dbname: str
    user: str
    password: str = field(repr=False)
    connect_timeout: int

    def connect_kwargs(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration shared by every component talking to the payment provider."""

    secret_key: str = field(repr=False)
    webhook_secret: str = field(repr=False)
    api_base: str
    api_version: str
    timeout_seconds: float
    webhook_tolerance: int
    reference_load_headroom: int
    tax_rates_file: Optional[str]
    prices_file: Optional[str]
    database: DatabaseConfig = field(repr=False)


def _to_int(name: str, value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _to_float(name: str, value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _connect_timeout(value: Optional[str]) -> int:
    timeout = _to_float("DB_CONNECT_TIMEOUT", value, default=5.0)
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def load_database_config(env: Optional[Mapping[str, str]] = None) -> DatabaseConfig:
    env_mapping = os.environ if env is None else env
    return DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int("DB_PORT", env_mapping.get("DB_PORT"), default=5432),
        dbname=env_mapping.get("DB_NAME", "paysync"),
        user=env_mapping.get("DB_USER", "paysync"),
        password=env_mapping.get("DB_PASSWORD", "paysync"),
        connect_timeout=_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT")),
    )


def load_provider_config(env: Optional[Mapping[str, str]] = None) -> ProviderConfig:
    """Load :class:`ProviderConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    api_base = (env_mapping.get("STRIPE_API_BASE") or DEFAULT_API_BASE).strip().rstrip("/")
    api_version = (env_mapping.get("STRIPE_API_VERSION") or DEFAULT_API_VERSION).strip()

    timeout_seconds = max(
        0.0, _to_float("STRIPE_TIMEOUT_SECONDS", env_mapping.get("STRIPE_TIMEOUT_SECONDS"), default=30.0)
    )
    webhook_tolerance = max(
        0, _to_int("STRIPE_WEBHOOK_TOLERANCE", env_mapping.get("STRIPE_WEBHOOK_TOLERANCE"), default=300)
    )
    headroom = max(
        0, _to_int("REFERENCE_LOAD_HEADROOM", env_mapping.get("REFERENCE_LOAD_HEADROOM"), default=10)
    )

    return ProviderConfig(
        secret_key=env_mapping.get("STRIPE_SECRET_KEY", ""),
        webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET", ""),
        api_base=api_base,
        api_version=api_version,
        timeout_seconds=timeout_seconds,
        webhook_tolerance=webhook_tolerance,
        reference_load_headroom=headroom,
        tax_rates_file=env_mapping.get("TAX_RATES_FILE") or None,
        prices_file=env_mapping.get("PRICES_FILE") or None,
        database=load_database_config(env_mapping),
    )


__all__ = [
    "DatabaseConfig",
    "ProviderConfig",
    "load_database_config",
    "load_provider_config",
]
