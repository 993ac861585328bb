"""
Rate limiting package for the admission service.

Holds the token bucket, the in-memory bucket store with its idle sweeper,
key strategies, named policies and the middleware that combines them into
per-request admit/deny decisions.
"""

from .token_bucket import TokenBucket
from .store import BucketStore, ConsumeResult
from .keys import RequestDescriptor, by_origin, by_tenant, by_caller, get_key_strategy, descriptor_from_request
from .policies import Policy, PolicyRegistry, build_policy_registry, load_overrides
from .middleware import AdmissionDecision, AdmissionMiddleware

__all__ = [
    "TokenBucket",
    "BucketStore",
    "ConsumeResult",
    "RequestDescriptor",
    "by_origin",
    "by_tenant",
    "by_caller",
    "get_key_strategy",
    "descriptor_from_request",
    "Policy",
    "PolicyRegistry",
    "build_policy_registry",
    "load_overrides",
    "AdmissionDecision",
    "AdmissionMiddleware",
]
