"""
Admission Service package.

The service sits in front of business endpoints and throttles requests
per caller, tenant or network origin before they reach the handlers.

Structure:
- app.main: FastAPI app, routes guarded by named policies, lifecycle wiring.
- app.ratelimit: Token bucket, bucket store, key strategies, policies and
  the admission middleware.
"""
