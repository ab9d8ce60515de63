"""
Governance Gateway HTTP server.

FastAPI front end over GovernanceGateway:

- identities: create, inspect, verify, revoke, rotate keys
- policy: evaluate an action, or enact it (no task is run over HTTP; the
  caller performs the work after an allowed decision)
- escalations: record a human resolution
- audit: query, verify the hash chain, compliance report
- ops: per-agent health, policy reload, /metrics

Errors raised as GovernanceError are rendered as the stable JSON envelope from
GovernanceError.as_dict() with the error's http_status.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import CLAW_E_IDENTITY_NOT_FOUND, GovernanceError, governance_error
from .governance import GovernanceGateway
from .metrics import instrument_fastapi


logger = logging.getLogger("claw_gateway.server")


# ---------------------------
# Request/Response Models
# ---------------------------

class CreateIdentityRequest(BaseModel):
    """Request to register a new agent identity."""
    agent_id: str
    name: Optional[str] = None
    role: Optional[str] = None
    owner: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class VerifyIdentityRequest(BaseModel):
    signature: Optional[str] = None
    message: Optional[str] = None


class RevokeRequest(BaseModel):
    reason: str = Field(min_length=1)


class EvaluateRequest(BaseModel):
    """Request to evaluate (or enact) an action for an agent."""
    agent_id: str
    action: str
    context: Dict[str, Any] = Field(default_factory=dict)
    signature: Optional[str] = None
    message: Optional[str] = None


class ResolveEscalationRequest(BaseModel):
    decision: str = Field(min_length=1)
    notes: Optional[str] = None
    resolved_by: str = "human"


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(gateway: Optional[GovernanceGateway] = None) -> FastAPI:
    """Create FastAPI application with governance endpoints."""
    from . import __version__ as claw_version

    if gateway is None:
        gateway = GovernanceGateway.from_config()

    app = FastAPI(
        title="Claw Governance Gateway",
        description="Identity, policy and audit governance for autonomous agents",
        version=claw_version,
    )
    app.state.gateway = gateway

    @app.exception_handler(GovernanceError)
    async def _governance_error_handler(request: Request, exc: GovernanceError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    if gateway.config.metrics_enabled:
        instrument_fastapi(app)

    def _credentials(signature: Optional[str], message: Optional[str]) -> Optional[Dict[str, Any]]:
        if signature is None:
            return None
        return {"signature": signature, "message": message}

    # --- identities ---

    @app.post("/v1/identities", status_code=201)
    async def create_identity(request: CreateIdentityRequest):
        view = gateway.identities.create_identity(
            request.agent_id,
            {"name": request.name, "role": request.role, "owner": request.owner, "tags": request.tags},
        )
        return view.to_dict()

    @app.get("/v1/identities/{agent_id}")
    async def get_identity(agent_id: str):
        view = gateway.identities.get_identity(agent_id)
        if view is None:
            raise governance_error(
                CLAW_E_IDENTITY_NOT_FOUND, f"Identity not found for agent: {agent_id}", http_status=404, agent_id=agent_id
            )
        return view.to_dict()

    @app.post("/v1/identities/{agent_id}/verify")
    async def verify_identity(agent_id: str, request: VerifyIdentityRequest):
        result = gateway.identities.verify_identity(agent_id, _credentials(request.signature, request.message))
        return result.to_dict()

    @app.post("/v1/identities/{agent_id}/revoke")
    async def revoke_identity(agent_id: str, request: RevokeRequest):
        return gateway.identities.revoke_identity(agent_id, request.reason).to_dict()

    @app.post("/v1/identities/{agent_id}/rotate")
    async def rotate_keypair(agent_id: str):
        return gateway.identities.rotate_keypair(agent_id).to_dict()

    # --- policy ---

    @app.post("/v1/evaluate")
    async def evaluate(request: EvaluateRequest):
        """Pure permission check; writes one policy_decision audit entry."""
        decision = gateway.check_permission(request.agent_id, request.action, request.context)
        return decision.to_dict()

    @app.post("/v1/execute")
    async def execute(request: EvaluateRequest):
        """Full governed pipeline without a task (the caller does the work)."""
        result = await gateway.execute(
            request.agent_id,
            request.action,
            request.context,
            credentials=_credentials(request.signature, request.message),
        )
        return result.to_dict()

    @app.post("/v1/escalations/{escalation_id}/resolve")
    async def resolve_escalation(escalation_id: str, request: ResolveEscalationRequest):
        resolution = gateway.resolve_escalation(
            escalation_id, request.decision, notes=request.notes, resolved_by=request.resolved_by
        )
        return resolution.to_dict()

    @app.post("/v1/policies/reload")
    async def reload_policies():
        count = gateway.reload_policies()
        return {"loaded": count, "agents": gateway.policies.list_agents()}

    # --- audit ---

    @app.get("/v1/audit")
    async def query_audit(
        agent_id: Optional[str] = None,
        entry_type: Optional[str] = Query(None, alias="type"),
        action: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        allowed: Optional[bool] = None,
        limit: int = Query(1000, ge=1, le=100000),
    ):
        entries = gateway.audit_log.query(
            agent_id=agent_id,
            entry_type=entry_type,
            action=action,
            start_time=_time_param(start),
            end_time=_time_param(end),
            allowed=allowed,
        )
        return {"count": len(entries), "entries": entries[-limit:]}

    @app.get("/v1/audit/verify")
    async def verify_audit(segment: Optional[str] = None, all_segments: bool = Query(False, alias="all")):
        if all_segments:
            results = gateway.audit_log.verify_all()
            return {"valid": all(r.valid for r in results), "segments": [r.as_dict() for r in results]}
        return gateway.audit_log.verify_chain(segment).as_dict()

    @app.get("/v1/reports/compliance")
    async def compliance_report(start: str, end: str):
        return gateway.generate_compliance_report(_time_param(start), _time_param(end))

    # --- ops ---

    @app.get("/v1/health/{agent_id}")
    async def agent_health(agent_id: str):
        return gateway.health_check(agent_id)

    @app.get("/v1/health")
    async def health():
        return {"status": "healthy", "agents": len(gateway.policies.list_agents())}

    return app


def _time_param(value: Optional[str]) -> Any:
    """Query-string timestamps: epoch milliseconds or ISO-8601."""
    if value is None or not value.strip():
        return None
    v = value.strip()
    return int(v) if v.isdigit() else v


def main():
    """
    Main entry point for the claw-gateway server.

    Usage:
        claw-gateway                    # Start on default port 8000
        claw-gateway --port 9000        # Start on custom port
        claw-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Claw Governance Gateway HTTP server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    CLAW_POLICY_DIR     Directory of agent policy documents (default: policies)
    CLAW_AUDIT_DIR      Directory for audit log segments (default: logs/audit)
    CLAW_IDENTITY_DIR   Directory of identity records (empty: in-memory)
    CLAW_METRICS_ENABLED  Mount /metrics (default: 1)
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")

    args = parser.parse_args()

    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    app = create_app()
    logger.info("Starting governance gateway on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
