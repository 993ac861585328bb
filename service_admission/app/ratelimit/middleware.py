"""
Admission middleware: turns a request and a named policy into an admit/deny decision.
"""

import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from fastapi import Request, Response

from shared.errors import RateLimitError, current_trace_id
from shared.logging import get_logger, get_request_id
from shared.metrics import MetricsCollector
from .keys import RequestDescriptor, descriptor_from_request
from .policies import Policy, PolicyRegistry
from .store import BucketStore


def _isoformat(timestamp: float) -> str:
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of one admission check plus the metadata reported to the client."""
    admitted: bool
    policy: Policy
    limit: int
    remaining: int
    reset_at: float
    retry_after_seconds: Optional[int] = None
    key: Optional[str] = None
    trace_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def message(self) -> str:
        return self.policy.message

    def headers(self) -> Dict[str, str]:
        """Rate limit headers sent on every response, admitted or not."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": _isoformat(self.reset_at),
        }
        if not self.admitted and self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers

    def details(self) -> Dict[str, Any]:
        return {
            "limit": self.limit,
            "window_ms": self.policy.window_ms,
            "retry_after_seconds": self.retry_after_seconds,
        }

    def error_body(self) -> Dict[str, Any]:
        """JSON body for a 429 response."""
        return {
            "error": self.to_exception().to_response().model_dump(),
            "timestamp": _isoformat(time.time()),
        }

    def to_exception(self) -> RateLimitError:
        return RateLimitError(
            message=self.message,
            details=self.details(),
            headers=self.headers(),
            trace_id=self.trace_id,
        )


class AdmissionMiddleware:
    """Applies named policies against a shared bucket store.

    Buckets are keyed by ``"<policy>:<derived key>"`` so that two policies
    deriving the same key never share a budget.
    """

    def __init__(
        self,
        store: BucketStore,
        registry: PolicyRegistry,
        metrics: Optional[MetricsCollector] = None,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.registry = registry
        self.metrics = metrics
        self.wall_clock = wall_clock
        self.logger = get_logger("admission.middleware")

    def _resolve(self, policy: Union[Policy, str]) -> Policy:
        if isinstance(policy, Policy):
            return policy
        return self.registry.get(policy)

    def check(self, descriptor: RequestDescriptor, policy: Union[Policy, str]) -> AdmissionDecision:
        """Consume one token for the descriptor's key under ``policy``."""
        policy = self._resolve(policy)
        return self._check(lambda: descriptor, policy)

    async def check_request(self, request: Request, policy: Union[Policy, str]) -> AdmissionDecision:
        """Check a FastAPI request, reading tenant ids from a JSON body if present."""
        policy = self._resolve(policy)
        body = await self._json_body(request)
        return self._check(lambda: descriptor_from_request(request, body), policy)

    def _check(self, describe: Callable[[], RequestDescriptor], policy: Policy) -> AdmissionDecision:
        trace_id = current_trace_id() or get_request_id() or str(uuid.uuid4())
        reset_at = self.wall_clock() + policy.window_seconds

        try:
            key = policy.key_strategy(describe())
            result = self.store.consume(f"{policy.name}:{key}", policy.capacity, policy.refill_rate)
        except Exception as e:
            # Fail open: throttling must never take the endpoint down
            self.logger.error(
                "Rate limiting error",
                policy=policy.name,
                trace_id=trace_id,
                error=str(e),
                exc_info=True,
            )
            if self.metrics:
                self.metrics.record_rate_limit_error(policy.name)
            return AdmissionDecision(
                admitted=True,
                policy=policy,
                limit=policy.capacity,
                remaining=policy.capacity,
                reset_at=reset_at,
                trace_id=trace_id,
                error=str(e),
            )

        if self.metrics:
            self.metrics.record_rate_limit_decision(policy.name, result.admitted)

        if result.admitted:
            self.logger.debug(
                "Rate limit check passed",
                policy=policy.name,
                key=key,
                remaining=result.remaining,
                limit=policy.capacity,
                trace_id=trace_id,
            )
            return AdmissionDecision(
                admitted=True,
                policy=policy,
                limit=policy.capacity,
                remaining=result.remaining,
                reset_at=reset_at,
                key=key,
                trace_id=trace_id,
            )

        # Rounded first so float noise (e.g. 12.000000000000002) does not add a second
        retry_after = max(1, math.ceil(round(result.retry_after_seconds, 6)))
        self.logger.warning(
            "Rate limit exceeded",
            policy=policy.name,
            key=key,
            limit=policy.capacity,
            window_ms=policy.window_ms,
            retry_after=retry_after,
            trace_id=trace_id,
        )
        return AdmissionDecision(
            admitted=False,
            policy=policy,
            limit=policy.capacity,
            remaining=0,
            reset_at=reset_at,
            retry_after_seconds=retry_after,
            key=key,
            trace_id=trace_id,
        )

    @staticmethod
    async def _json_body(request: Request) -> Optional[Dict[str, Any]]:
        if not request.headers.get("content-type", "").startswith("application/json"):
            return None
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    def dependency(self, policy_name: str):
        """FastAPI dependency enforcing ``policy_name`` on a route.

        The policy is resolved immediately, so a typo in a route definition
        fails at startup. Denied requests raise ``RateLimitError`` before the
        route handler runs.
        """
        policy = self.registry.get(policy_name)

        async def enforce_rate_limit(request: Request, response: Response) -> AdmissionDecision:
            decision = await self.check_request(request, policy)
            if not decision.admitted:
                raise decision.to_exception()
            response.headers.update(decision.headers())
            # Picked up by the HTTP middleware if the handler fails after admission
            request.state.rate_limit_headers = decision.headers()
            return decision

        return enforce_rate_limit

    def shutdown(self) -> None:
        """Release bucket state and stop the sweeper."""
        self.store.shutdown()
