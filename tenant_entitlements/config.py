"""
Entitlement engine configuration.

All values come from environment variables with conservative defaults.
Module-level constants are read once at import; EntitlementSettings.from_env()
re-reads the environment so tests and workers can build their own copy.
"""

import os
from dataclasses import dataclass


def _positive_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _non_negative_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    return value


# In-process cache lifetime (5 minutes)
CACHE_TTL_SECONDS = _positive_float("ENTITLEMENT_CACHE_TTL_SECONDS", "300")

# Upper bound on every store call made from the async read path
STORE_TIMEOUT_SECONDS = _positive_float("ENTITLEMENT_STORE_TIMEOUT_SECONDS", "5")

# Bounded pool for fire-and-forget cache population
POPULATION_WORKERS = max(1, _non_negative_int("ENTITLEMENT_POPULATION_WORKERS", "4"))

# Maintenance worker cadence
SWEEP_INTERVAL_SECONDS = _positive_float("ENTITLEMENT_SWEEP_INTERVAL_SECONDS", "60")
FULL_REFRESH_EVERY = _non_negative_int("ENTITLEMENT_FULL_REFRESH_EVERY", "0")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./entitlements.db")


@dataclass(frozen=True)
class EntitlementSettings:
    cache_ttl_seconds: float = CACHE_TTL_SECONDS
    store_timeout_seconds: float = STORE_TIMEOUT_SECONDS
    population_workers: int = POPULATION_WORKERS
    sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS
    full_refresh_every: int = FULL_REFRESH_EVERY
    database_url: str = DATABASE_URL

    def __post_init__(self) -> None:
        if self.cache_ttl_seconds <= 0:
            raise ValueError("cache_ttl_seconds must be positive")
        if self.store_timeout_seconds <= 0:
            raise ValueError("store_timeout_seconds must be positive")
        if self.population_workers < 1:
            raise ValueError("population_workers must be at least 1")

    @classmethod
    def from_env(cls) -> "EntitlementSettings":
        return cls(
            cache_ttl_seconds=_positive_float("ENTITLEMENT_CACHE_TTL_SECONDS", "300"),
            store_timeout_seconds=_positive_float("ENTITLEMENT_STORE_TIMEOUT_SECONDS", "5"),
            population_workers=max(1, _non_negative_int("ENTITLEMENT_POPULATION_WORKERS", "4")),
            sweep_interval_seconds=_positive_float("ENTITLEMENT_SWEEP_INTERVAL_SECONDS", "60"),
            full_refresh_every=_non_negative_int("ENTITLEMENT_FULL_REFRESH_EVERY", "0"),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./entitlements.db"),
        )
