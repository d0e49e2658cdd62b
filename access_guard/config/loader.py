"""
Configuration management and loading.

Handles rate-limit, session and subscription settings from a YAML file.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict

import yaml

from access_guard.core.plans import TOKEN_COSTS, Feature, TokenCostTable, parse_feature
from access_guard.storage.db import DEFAULT_DB_PATH


class StoreKind(Enum):
    """Backing store variants."""
    SQLITE = "sqlite"
    MEMORY = "memory"


@dataclass(frozen=True)
class RateLimitConfig:
    """Attempt limits for authentication operations."""
    window_minutes: float = 15
    max_attempts: int = 5

    def __post_init__(self):
        """Validate limits are positive."""
        if self.window_minutes <= 0:
            raise ValueError("window_minutes must be > 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.window_minutes)


@dataclass(frozen=True)
class SessionConfig:
    """Session revalidation settings."""
    revalidate_interval_seconds: float = 300
    refresh_skew_seconds: float = 0

    def __post_init__(self):
        if self.revalidate_interval_seconds <= 0:
            raise ValueError("revalidate_interval_seconds must be > 0")
        if self.refresh_skew_seconds < 0:
            raise ValueError("refresh_skew_seconds cannot be negative")


@dataclass(frozen=True)
class SubscriptionConfig:
    """Subscription store and renewal settings."""
    store: StoreKind = StoreKind.SQLITE
    db_path: str = DEFAULT_DB_PATH
    renewal_days: int = 30
    low_balance_threshold: float = 0.10

    def __post_init__(self):
        if self.renewal_days <= 0:
            raise ValueError("renewal_days must be > 0")
        if not 0 < self.low_balance_threshold < 1:
            raise ValueError("low_balance_threshold must be between 0 and 1")


@dataclass(frozen=True)
class AccessConfig:
    """Complete access guard configuration."""
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    subscription: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    token_costs: TokenCostTable = TOKEN_COSTS


def load_access_config(path: str) -> AccessConfig:
    """Load and validate access configuration from a YAML file.

    Strict validation ensures no silent misconfigurations; every section
    is optional and falls back to its defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AccessConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Access config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return AccessConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'rate_limit', 'session', 'subscription', 'token_costs'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    rate_limit_data = _section(raw_config, 'rate_limit', {'window_minutes', 'max_attempts'})
    rate_limit = RateLimitConfig(
        window_minutes=_number(rate_limit_data, 'window_minutes', 15, 'rate_limit'),
        max_attempts=_integer(rate_limit_data, 'max_attempts', 5, 'rate_limit'),
    )

    session_data = _section(raw_config, 'session', {'revalidate_interval_seconds', 'refresh_skew_seconds'})
    session = SessionConfig(
        revalidate_interval_seconds=_number(session_data, 'revalidate_interval_seconds', 300, 'session'),
        refresh_skew_seconds=_number(session_data, 'refresh_skew_seconds', 0, 'session'),
    )

    subscription_data = _section(
        raw_config, 'subscription',
        {'store', 'db_path', 'renewal_days', 'low_balance_threshold'},
    )
    subscription = SubscriptionConfig(
        store=_store_kind(subscription_data.get('store', StoreKind.SQLITE.value)),
        db_path=str(subscription_data.get('db_path', DEFAULT_DB_PATH)),
        renewal_days=_integer(subscription_data, 'renewal_days', 30, 'subscription'),
        low_balance_threshold=_number(subscription_data, 'low_balance_threshold', 0.10, 'subscription'),
    )

    return AccessConfig(
        rate_limit=rate_limit,
        session=session,
        subscription=subscription,
        token_costs=_parse_token_costs(raw_config.get('token_costs') or {}),
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Fetch an optional section and reject unknown keys in it."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _number(data: Dict, key: str, default: float, path: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _integer(data: Dict, key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _store_kind(value: Any) -> StoreKind:
    if not isinstance(value, str):
        raise ValueError("'store' in subscription must be a string")
    try:
        return StoreKind(value.lower())
    except ValueError:
        valid_kinds = [kind.value for kind in StoreKind]
        raise ValueError(f"'store' in subscription must be one of: {valid_kinds}")


def _parse_token_costs(data: Dict) -> TokenCostTable:
    """Parse optional per-feature cost overrides.

    Raises:
        ValueError: If a feature is unknown or a cost is not a positive integer
    """
    if not isinstance(data, dict):
        raise ValueError("'token_costs' must be a dictionary")

    overrides: Dict[Feature, int] = {}
    for name, cost in data.items():
        feature = parse_feature(str(name))
        if isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
            raise ValueError(f"Token cost for {feature.value} must be a positive integer")
        overrides[feature] = cost

    if not overrides:
        return TOKEN_COSTS
    return TOKEN_COSTS.with_overrides(overrides)
