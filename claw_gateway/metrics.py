"""Prometheus metrics for the governance gateway.

Metrics goals:
- low-cardinality labels (never agent ids, actions or context values)
- internal observability for decisions, identity checks, governed actions,
  revocations and audit chain health

Set CLAW_METRICS_ENABLED=0 to skip mounting /metrics on the HTTP app; the
counters themselves are always updated.
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "claw_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "claw_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
POLICY_DECISIONS_TOTAL = Counter(
    "claw_policy_decisions_total",
    "Total policy decisions",
    ["outcome"],
)
POLICY_EVALUATION_SECONDS = Histogram(
    "claw_policy_evaluation_seconds",
    "Policy evaluation latency in seconds",
    buckets=(0.0001, 0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1),
)
IDENTITY_VERIFICATIONS_TOTAL = Counter(
    "claw_identity_verifications_total",
    "Total identity verification attempts",
    ["result"],
)
ACTIONS_TOTAL = Counter(
    "claw_actions_total",
    "Total governed actions executed",
    ["outcome"],
)
TRUST_REVOCATIONS_TOTAL = Counter(
    "claw_trust_revocations_total",
    "Total identity revocations",
    ["cause"],
)
AUDIT_ROTATIONS_TOTAL = Counter(
    "claw_audit_rotations_total",
    "Total audit log segment rotations",
)
AUDIT_CHAIN_VERIFICATIONS_TOTAL = Counter(
    "claw_audit_chain_verifications_total",
    "Total audit chain verifications",
    ["result"],
)


def decision_outcome(allowed: bool, requires_escalation: bool) -> str:
    if requires_escalation:
        return "escalate"
    return "allow" if allowed else "deny"


def record_decision(outcome: str, elapsed_seconds: Optional[float] = None) -> None:
    POLICY_DECISIONS_TOTAL.labels(outcome=str(outcome)).inc()
    if elapsed_seconds is not None:
        POLICY_EVALUATION_SECONDS.observe(max(0.0, float(elapsed_seconds)))


def record_verification(result: str) -> None:
    IDENTITY_VERIFICATIONS_TOTAL.labels(result=str(result)).inc()


def record_action(success: bool) -> None:
    ACTIONS_TOTAL.labels(outcome="success" if success else "failure").inc()


def record_revocation(cause: str) -> None:
    TRUST_REVOCATIONS_TOTAL.labels(cause=str(cause)).inc()


def record_audit_rotation() -> None:
    AUDIT_ROTATIONS_TOTAL.inc()


def record_chain_verification(valid: bool) -> None:
    AUDIT_CHAIN_VERIFICATIONS_TOTAL.labels(result="valid" if valid else "invalid").inc()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("CLAW_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
