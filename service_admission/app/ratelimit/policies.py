"""
Named rate limit policies for each class of endpoint.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Mapping, Optional

import yaml

from shared.config import BaseConfig
from shared.errors import ConfigurationError
from shared.logging import get_logger
from .keys import KeyStrategy, get_key_strategy

DEFAULT_MESSAGE = "Too many requests, please try again later"

# name -> (key strategy, deny message); capacity and window come from settings
DEFAULT_POLICIES: Dict[str, Dict[str, str]] = {
    "general": {
        "key_strategy": "origin",
        "message": "Too many requests from this IP, please try again later",
    },
    "query": {
        "key_strategy": "tenant",
        "message": "Too many queries from this enterprise, please try again later",
    },
    "upload": {
        "key_strategy": "tenant",
        "message": "Too many uploads from this enterprise, please try again later",
    },
    "admin": {
        "key_strategy": "caller",
        "message": "Too many admin requests, please try again later",
    },
    "health": {
        "key_strategy": "origin",
        "message": "Too many health check requests, please try again later",
    },
}

# Accept the camelCase spelling used by other services' rate limit files
_FIELD_ALIASES = {
    "windowMs": "window_ms",
    "keyStrategy": "key_strategy",
    "capacity": "max",
}
_ALLOWED_FIELDS = {"window_ms", "max", "key_strategy", "message"}


@dataclass(frozen=True)
class Policy:
    """Immutable admission policy for one endpoint class."""
    name: str
    capacity: int
    window_seconds: float
    key_strategy_name: str = "origin"
    message: str = DEFAULT_MESSAGE
    key_strategy: KeyStrategy = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if isinstance(self.capacity, bool) or not isinstance(self.capacity, int) or self.capacity <= 0:
            raise ConfigurationError(
                f"Policy '{self.name}' capacity must be a positive integer",
                {"policy": self.name, "max": self.capacity},
            )
        if isinstance(self.window_seconds, bool) or not isinstance(self.window_seconds, (int, float)) \
                or self.window_seconds <= 0:
            raise ConfigurationError(
                f"Policy '{self.name}' window must be positive",
                {"policy": self.name, "window_seconds": self.window_seconds},
            )
        object.__setattr__(self, "key_strategy", get_key_strategy(self.key_strategy_name))

    @classmethod
    def from_window_ms(cls, name: str, max: int, window_ms: int, key_strategy: str = "origin",
                       message: Optional[str] = None) -> "Policy":
        if isinstance(window_ms, bool) or not isinstance(window_ms, (int, float)):
            raise ConfigurationError(
                f"Policy '{name}' window_ms must be a number",
                {"policy": name, "window_ms": window_ms},
            )
        return cls(
            name=name,
            capacity=max,
            window_seconds=window_ms / 1000,
            key_strategy_name=key_strategy,
            message=message or DEFAULT_MESSAGE,
        )

    @property
    def refill_rate(self) -> float:
        """Tokens regenerated per second."""
        return self.capacity / self.window_seconds

    @property
    def window_ms(self) -> int:
        return int(round(self.window_seconds * 1000))

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "max": self.capacity,
            "window_ms": self.window_ms,
            "key_strategy": self.key_strategy_name,
            "message": self.message,
        }


class PolicyRegistry:
    """Fixed set of named policies, validated once at startup."""

    def __init__(self, policies: Mapping[str, Policy]):
        self._policies: Dict[str, Policy] = dict(policies)

    def get(self, name: str) -> Policy:
        try:
            return self._policies[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown rate limit policy: {name}",
                {"policy": name, "available": sorted(self._policies)},
            ) from None

    def names(self):
        return sorted(self._policies)

    def __contains__(self, name: str) -> bool:
        return name in self._policies

    def __iter__(self) -> Iterator[Policy]:
        return iter(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)

    def describe(self) -> Dict[str, Dict[str, Any]]:
        return {name: policy.describe() for name, policy in sorted(self._policies.items())}


def _normalize_override(name: str, raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Rate limit override for '{name}' must be a mapping",
            {"policy": name},
        )
    normalized = {_FIELD_ALIASES.get(key, key): value for key, value in raw.items()}
    unknown = set(normalized) - _ALLOWED_FIELDS
    if unknown:
        raise ConfigurationError(
            f"Unknown fields in rate limit override for '{name}'",
            {"policy": name, "fields": sorted(unknown)},
        )
    return normalized


def load_overrides(path: str) -> Dict[str, Dict[str, Any]]:
    """Read per-policy overrides from a YAML file.

    The file holds a top-level ``policies`` mapping keyed by policy name::

        policies:
          query:
            window_ms: 60000
            max: 50
            key_strategy: tenant
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            "Unable to read rate limits file",
            {"path": path, "error": str(e)},
        ) from e

    policies = document.get("policies", {}) if isinstance(document, dict) else None
    if not isinstance(policies, dict):
        raise ConfigurationError(
            "Rate limits file must contain a 'policies' mapping",
            {"path": path},
        )
    return {str(name): _normalize_override(str(name), raw) for name, raw in policies.items()}


def build_policy_registry(config: BaseConfig,
                          overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> PolicyRegistry:
    """Build the registry from settings and optional overrides.

    Overrides come from ``overrides`` when given, otherwise from
    ``config.rate_limits_file``. Any invalid value raises
    ``ConfigurationError`` here rather than on the first request.
    """
    logger = get_logger("admission.policies")

    params: Dict[str, Dict[str, Any]] = {}
    for name, defaults in DEFAULT_POLICIES.items():
        params[name] = {
            "window_ms": getattr(config, f"{name}_window_ms"),
            "max": getattr(config, f"{name}_max"),
            **defaults,
        }

    if overrides is None and config.rate_limits_file:
        overrides = load_overrides(config.rate_limits_file)

    for name, override in (overrides or {}).items():
        override = _normalize_override(name, override)
        if name not in params and not {"window_ms", "max"} <= set(override):
            raise ConfigurationError(
                f"New policy '{name}' requires window_ms and max",
                {"policy": name},
            )
        params.setdefault(name, {}).update(override)

    policies = {name: Policy.from_window_ms(name, **kwargs) for name, kwargs in params.items()}
    logger.info("Rate limit policies loaded", policies=sorted(policies))
    return PolicyRegistry(policies)
