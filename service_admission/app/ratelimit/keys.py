"""
Key strategies that map a request to its rate limit accounting key.

Every strategy is total: it always returns a key and never raises for a
well-formed descriptor. Tenant and caller keys keep one noisy tenant or user
from draining another's budget; the origin fallback still covers
unauthenticated traffic.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence

from fastapi import Request

from shared.errors import ConfigurationError

UNKNOWN_ORIGIN = "unknown"
TENANT_FIELDS = ("tenant_id", "enterprise_id")


@dataclass(frozen=True)
class RequestDescriptor:
    """Transport-agnostic view of the attributes a key strategy may use."""
    origin: Optional[str] = None
    caller_id: Optional[str] = None
    path_params: Dict[str, Any] = field(default_factory=dict)
    body: Dict[str, Any] = field(default_factory=dict)
    caller_tenants: Sequence[str] = ()

    def tenant_id(self) -> Optional[str]:
        """Tenant from path params, then body, then the caller's own tenants."""
        for source in (self.path_params, self.body):
            for name in TENANT_FIELDS:
                value = source.get(name)
                if value:
                    return str(value)
        if self.caller_tenants:
            return str(self.caller_tenants[0])
        return None


KeyStrategy = Callable[[RequestDescriptor], str]


def by_origin(descriptor: RequestDescriptor) -> str:
    return descriptor.origin or UNKNOWN_ORIGIN


def by_tenant(descriptor: RequestDescriptor) -> str:
    tenant_id = descriptor.tenant_id()
    if tenant_id:
        return f"tenant:{tenant_id}"
    return f"origin:{by_origin(descriptor)}"


def by_caller(descriptor: RequestDescriptor) -> str:
    if descriptor.caller_id:
        return f"caller:{descriptor.caller_id}"
    return f"origin:{by_origin(descriptor)}"


KEY_STRATEGIES: Dict[str, KeyStrategy] = {
    "origin": by_origin,
    "tenant": by_tenant,
    "caller": by_caller,
}


def get_key_strategy(name: str) -> KeyStrategy:
    """Resolve a strategy by its configuration name."""
    try:
        return KEY_STRATEGIES[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown key strategy: {name}",
            {"key_strategy": name, "available": sorted(KEY_STRATEGIES)},
        ) from None


def get_client_ip(request: Request) -> str:
    """Extract the caller IP from standard proxy headers or the socket peer."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    if request.client:
        return request.client.host
    return UNKNOWN_ORIGIN


def descriptor_from_request(request: Request, body: Optional[Dict[str, Any]] = None) -> RequestDescriptor:
    """Build a descriptor from a FastAPI request.

    Caller identity is read from ``request.state.user_info``, which the
    authentication layer sets to a dict with ``user_id`` and either
    ``tenant_id`` or an ``enterprises`` list.
    """
    user_info = getattr(request.state, "user_info", None)
    caller_id = None
    caller_tenants: Sequence[str] = ()
    if isinstance(user_info, dict):
        caller_id = user_info.get("user_id")
        if user_info.get("enterprises"):
            caller_tenants = tuple(user_info["enterprises"])
        elif user_info.get("tenant_id"):
            caller_tenants = (user_info["tenant_id"],)

    return RequestDescriptor(
        origin=get_client_ip(request),
        caller_id=caller_id,
        path_params=dict(request.path_params),
        body=body if isinstance(body, dict) else {},
        caller_tenants=caller_tenants,
    )
