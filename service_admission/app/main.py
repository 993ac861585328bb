"""
Admission service: FastAPI application with routes guarded by named rate limit policies.
"""

from typing import Any, Dict, Optional

from fastapi import Depends, Request

from shared.base_service import BaseService
from shared.errors import ValidationError
from .ratelimit import (
    AdmissionDecision,
    AdmissionMiddleware,
    BucketStore,
    build_policy_registry,
)


class AdmissionService(BaseService):
    """Admission control service implementation."""

    def __init__(self, store: Optional[BucketStore] = None, **config_overrides):
        super().__init__("admission", 8000, **config_overrides)

        # Invalid policies must stop the service here, never on a request
        self.policies = build_policy_registry(self.config)
        self.store = store if store is not None else BucketStore(
            sweep_interval_seconds=self.config.rate_limit_sweep_interval_seconds,
            idle_seconds=self.config.rate_limit_idle_seconds,
            shards=self.config.rate_limit_shards,
            metrics=self.metrics,
            start_sweeper=False,
        )
        self.admission = AdmissionMiddleware(self.store, self.policies, metrics=self.metrics)

        self._setup_admission_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.admission_service = self

    async def on_startup(self):
        await super().on_startup()
        self.store.start()

    async def on_shutdown(self):
        self.admission.shutdown()
        await super().on_shutdown()

    def _setup_admission_routes(self):
        """Routes for each endpoint class, each behind its own policy."""
        admission = self.admission

        @self.app.get("/health")
        async def health_check(decision: AdmissionDecision = Depends(admission.dependency("health"))):
            """Health check endpoint."""
            self.metrics.record_health_check("ok")
            return self._health_payload(await self._check_dependencies())

        @self.app.get("/api/v1/status")
        async def api_status(decision: AdmissionDecision = Depends(admission.dependency("general"))):
            """General traffic probe."""
            return {
                "status": "operational",
                "service": self.service_name,
                "rate_limit": {"remaining": decision.remaining, "limit": decision.limit},
            }

        @self.app.post("/api/v1/enterprises/{enterprise_id}/query")
        async def submit_query(
            enterprise_id: str,
            request: Request,
            decision: AdmissionDecision = Depends(admission.dependency("query")),
        ):
            """Accept a query for an enterprise; the query itself is handled downstream."""
            payload = await self._json_payload(request)
            if not payload.get("query"):
                raise ValidationError("Query text is required", {"field": "query"})
            return {"enterprise_id": enterprise_id, "accepted": True}

        @self.app.post("/api/v1/enterprises/{enterprise_id}/uploads")
        async def submit_upload(
            enterprise_id: str,
            decision: AdmissionDecision = Depends(admission.dependency("upload")),
        ):
            """Accept an upload for an enterprise."""
            return {"enterprise_id": enterprise_id, "accepted": True}

        @self.app.get("/api/v1/admin/rate-limits")
        async def rate_limit_overview(decision: AdmissionDecision = Depends(admission.dependency("admin"))):
            """Report configured policies and live bucket count."""
            return {
                "policies": self.policies.describe(),
                "buckets": len(self.store),
                "sweeper_running": self.store.running,
            }

    @staticmethod
    async def _json_payload(request: Request) -> Dict[str, Any]:
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationError("Request body must be JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        return payload


def create_app():
    """Create FastAPI application."""
    service = AdmissionService()
    return service.app


if __name__ == "__main__":
    service = AdmissionService()
    service.run()
