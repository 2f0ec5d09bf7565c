"""
Activity Engine Configuration - Poll cadence, retry and debounce settings.

All values have production defaults and can be overridden through
environment variables (a .env file is loaded when present).
"""

import os
from dataclasses import dataclass, field
from typing import Any, Optional

from dotenv import load_dotenv

from chain_adapters.models import Chain
from chain_adapters.retry import RetryPolicy


load_dotenv()


# Default poll interval per chain (milliseconds)
DEFAULT_POLL_INTERVAL_MS: dict[Chain, int] = {
    Chain.ETH: 6_000,
    Chain.BNB: 2_000,
    Chain.TRON: 2_000,
    Chain.BTC: 20_000,
    Chain.LTC: 10_000,
    Chain.SOL: 10_000,
}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}") from None


@dataclass
class ChainSettings:
    """Polling configuration for one chain."""
    chain: Chain
    enabled: bool = True

    poll_interval_seconds: float = 6.0
    inter_wallet_delay_seconds: float = 0.4

    # Rate-limit retry
    max_attempts: int = 3
    retry_base_delay_seconds: float = 5.0
    retry_multiplier: float = 2.0
    retry_jitter: float = 0.0

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.retry_base_delay_seconds,
            multiplier=self.retry_multiplier,
            jitter=self.retry_jitter,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain": self.chain.value,
            "enabled": self.enabled,
            "poll_interval_seconds": self.poll_interval_seconds,
            "inter_wallet_delay_seconds": self.inter_wallet_delay_seconds,
            "max_attempts": self.max_attempts,
            "retry_base_delay_seconds": self.retry_base_delay_seconds,
        }


@dataclass
class EngineConfig:
    """Top-level engine configuration."""

    chains: dict[Chain, ChainSettings] = field(default_factory=dict)

    # Full resync sweep over every known wallet
    resync_interval_seconds: float = 1800.0
    resync_enabled: bool = True

    # Push subscriptions
    debounce_seconds: float = 0.5
    seen_set_capacity: int = 1000

    database_url: Optional[str] = None

    def settings_for(self, chain: Chain) -> ChainSettings:
        """Settings for a chain, falling back to defaults."""
        settings = self.chains.get(chain)
        if settings is None:
            settings = ChainSettings(
                chain=chain,
                poll_interval_seconds=DEFAULT_POLL_INTERVAL_MS[chain] / 1000,
            )
            self.chains[chain] = settings
        return settings

    @classmethod
    def defaults(cls) -> "EngineConfig":
        return cls(
            chains={
                chain: ChainSettings(
                    chain=chain,
                    poll_interval_seconds=interval_ms / 1000,
                )
                for chain, interval_ms in DEFAULT_POLL_INTERVAL_MS.items()
            }
        )

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """
        Build configuration from environment variables.

        <CHAIN>_REFRESH_INTERVAL_MS  per-chain poll interval
        CHAIN_DELAY_MS               delay between wallets in a tick
        FETCH_INTERVAL_MINUTES       full resync period
        SUBSCRIPTION_DEBOUNCE_MS     push activity debounce window
        SEEN_SET_CAPACITY            per-address seen-signature cap
        RATE_LIMIT_RETRIES           retries after the first rate-limited call
        RATE_LIMIT_BASE_MS           first retry delay
        DATABASE_URL                 storage location
        """
        inter_wallet_delay = _env_int("CHAIN_DELAY_MS", 400) / 1000
        retries = _env_int("RATE_LIMIT_RETRIES", 2)
        retry_base = _env_int("RATE_LIMIT_BASE_MS", 5000) / 1000

        chains = {}
        for chain, default_ms in DEFAULT_POLL_INTERVAL_MS.items():
            interval_ms = _env_int(f"{chain.value}_REFRESH_INTERVAL_MS", default_ms)
            chains[chain] = ChainSettings(
                chain=chain,
                enabled=os.getenv(f"{chain.value}_ENABLED", "true").lower() != "false",
                poll_interval_seconds=interval_ms / 1000,
                inter_wallet_delay_seconds=inter_wallet_delay,
                max_attempts=retries + 1,
                retry_base_delay_seconds=retry_base,
            )

        return cls(
            chains=chains,
            resync_interval_seconds=_env_int("FETCH_INTERVAL_MINUTES", 30) * 60,
            debounce_seconds=_env_int("SUBSCRIPTION_DEBOUNCE_MS", 500) / 1000,
            seen_set_capacity=_env_int("SEEN_SET_CAPACITY", 1000),
            database_url=os.getenv("DATABASE_URL"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "chains": {c.value: s.to_dict() for c, s in self.chains.items()},
            "resync_interval_seconds": self.resync_interval_seconds,
            "resync_enabled": self.resync_enabled,
            "debounce_seconds": self.debounce_seconds,
            "seen_set_capacity": self.seen_set_capacity,
        }


# Default instance
_config: Optional[EngineConfig] = None


def get_config() -> EngineConfig:
    """Get the engine configuration, loading it from the environment once."""
    global _config
    if _config is None:
        _config = EngineConfig.from_env()
    return _config


def set_config(config: EngineConfig) -> None:
    """Replace the engine configuration."""
    global _config
    _config = config
