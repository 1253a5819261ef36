"""
crowdgov Configuration

All settings come from environment variables prefixed with ``CROWDGOV_``.
Module-level values are the client defaults used by the CLI;
``GovernanceConfig.from_env()`` reads and validates the server settings at
call time.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class NetworkType(Enum):
    LOCAL = "local"
    TESTNET = "testnet"
    MAINNET = "mainnet"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def _get_bool(env_var: str, default: str = "0") -> bool:
    value = os.getenv(env_var, default).strip().lower()
    return value in ("1", "true", "yes", "on")


def _get_int(env_var: str, default: int) -> int:
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{env_var} must be an integer, got {raw!r}") from exc


# Client-side defaults; the server reads GovernanceConfig.from_env().
API_HOST = os.getenv("CROWDGOV_API_HOST", "127.0.0.1")
API_PORT = _get_int("CROWDGOV_API_PORT", 8545)
API_URL = os.getenv("CROWDGOV_API_URL", f"http://{API_HOST}:{API_PORT}")


@dataclass(frozen=True)
class GovernanceConfig:
    """Validated runtime settings."""

    network: NetworkType = NetworkType.LOCAL
    environment: str = "development"
    escrow_account: str = "crowdgov.escrow"
    native_asset_symbol: str = "STX"
    api_host: str = "127.0.0.1"
    api_port: int = 8545
    log_level: str = "INFO"
    log_file: str = ""
    state_file: str = ""
    metrics_enabled: bool = True
    allow_clock_override: bool = True

    def __post_init__(self) -> None:
        if not self.escrow_account:
            raise ConfigurationError("Escrow account cannot be empty")
        if not 0 < self.api_port < 65536:
            raise ConfigurationError(f"API port out of range: {self.api_port}")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Unknown log level: {self.log_level}")
        if self.network == NetworkType.MAINNET and self.allow_clock_override:
            raise ConfigurationError(
                "CROWDGOV_ALLOW_CLOCK_OVERRIDE must be disabled on mainnet; "
                "the logical clock is owned by the host environment"
            )

    @classmethod
    def from_env(cls) -> "GovernanceConfig":
        network_name = os.getenv("CROWDGOV_NETWORK", "local").strip().lower()
        try:
            network = NetworkType(network_name)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown network: {network_name}") from exc

        config = cls(
            network=network,
            environment=os.getenv("CROWDGOV_ENVIRONMENT", "development").strip(),
            escrow_account=os.getenv("CROWDGOV_ESCROW_ACCOUNT", "crowdgov.escrow").strip(),
            native_asset_symbol=os.getenv("CROWDGOV_NATIVE_ASSET", "STX").strip(),
            api_host=os.getenv("CROWDGOV_API_HOST", "127.0.0.1").strip(),
            api_port=_get_int("CROWDGOV_API_PORT", 8545),
            log_level=os.getenv("CROWDGOV_LOG_LEVEL", "INFO").strip().upper(),
            log_file=os.getenv("CROWDGOV_LOG_FILE", "").strip(),
            state_file=os.getenv("CROWDGOV_STATE_FILE", "").strip(),
            metrics_enabled=_get_bool("CROWDGOV_METRICS_ENABLED", "1"),
            allow_clock_override=_get_bool(
                "CROWDGOV_ALLOW_CLOCK_OVERRIDE", "1" if network == NetworkType.LOCAL else "0"
            ),
        )
        logger.debug(
            "Configuration loaded for %s",
            config.network.value,
            extra={"event": "config.loaded", "environment": config.environment},
        )
        return config
