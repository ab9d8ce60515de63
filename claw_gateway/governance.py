"""Governance orchestrator.

Every governed action goes through the same fixed pipeline:

    verify identity -> evaluate policy -> (escalate | deny | run task)
        -> log action -> adjust trust

The orchestrator never raises for a denied, escalated or failed action; those
come back as an ExecutionResult. Exceptions are reserved for configuration
errors and programmer errors (unknown identities where one is required).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from .audit_log import AuditLog
from .config import (
    TRUST_PENALTY_FAILURE,
    TRUST_REWARD_SUCCESS,
    GovernanceConfig,
)
from .crypto import canonical_json_dumps
from .errors import CLAW_E_BAD_REQUEST, CLAW_E_IDENTITY_NOT_FOUND, governance_error
from .identity import STATUS_ACTIVE, IdentityRegistry, VerificationResult
from .policy import Decision, PolicyEngine
from . import metrics


logger = logging.getLogger("claw_gateway.governance")

Task = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass
class ExecutionResult:
    """Outcome of one governed action."""

    success: bool
    agent_id: str
    action: str
    output: Any = None
    error: Optional[str] = None
    reason: Optional[str] = None
    trust_score: Optional[int] = None
    policy_denied: bool = False
    requires_escalation: bool = False
    escalation_id: Optional[str] = None
    escalation_rule: Any = None
    execution_time_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"success": self.success, "agentId": self.agent_id, "action": self.action}
        if self.requires_escalation:
            d.update(
                requiresEscalation=True,
                escalationId=self.escalation_id,
                reason=self.reason,
                escalationRule=self.escalation_rule,
            )
            return d
        if self.policy_denied:
            d.update(policyDenied=True, reason=self.reason, error=self.error)
            return d
        if self.execution_time_ms is None:
            # identity rejection
            d.update(error=self.error, trustScore=self.trust_score)
            return d
        if self.success:
            d["output"] = self.output
        else:
            d["error"] = self.error
        d.update(executionTime=self.execution_time_ms, trustScore=self.trust_score)
        return d


@dataclass(frozen=True)
class Resolution:
    escalation_id: str
    decision: str
    resolved_by: str
    notes: Optional[str] = None
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "escalationId": self.escalation_id,
            "decision": self.decision,
            "resolvedBy": self.resolved_by,
            "notes": self.notes,
            "timestamp": self.timestamp,
        }


class GovernanceGateway:
    """Wires the identity registry, policy engine and audit log together."""

    def __init__(
        self,
        audit_log: AuditLog,
        identities: IdentityRegistry,
        policies: PolicyEngine,
        *,
        config: Optional[GovernanceConfig] = None,
    ):
        self.audit_log = audit_log
        self.identities = identities
        self.policies = policies
        self.config = config or GovernanceConfig()

    @classmethod
    def from_config(cls, config: Optional[GovernanceConfig] = None) -> "GovernanceGateway":
        """Build a gateway from configuration (defaults to the environment)."""
        config = config or GovernanceConfig.from_env()
        audit_log = AuditLog(Path(config.audit_dir), rotation_size_bytes=config.rotation_size_bytes)
        identities = IdentityRegistry(
            audit_log,
            Path(config.identity_dir) if config.identity_dir else None,
            min_trust_score=config.min_trust_score,
        )
        policies = PolicyEngine(audit_log, policy_dir=Path(config.policy_dir))
        logger.info(
            "Governance gateway initialized (policies=%s audit=%s identities=%s)",
            config.policy_dir,
            config.audit_dir,
            config.identity_dir or "<memory>",
        )
        return cls(audit_log, identities, policies, config=config)

    # ------------------------------------------------------------------
    # Governed execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        agent_id: str,
        action: str,
        context: Optional[Mapping[str, Any]] = None,
        task: Optional[Task] = None,
        credentials: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionResult:
        context = dict(context or {})

        verification: VerificationResult = self.identities.verify_identity(agent_id, credentials)
        if not verification.verified:
            return ExecutionResult(
                success=False,
                agent_id=agent_id,
                action=action,
                error=f"Identity verification failed: {verification.reason}",
                trust_score=verification.trust_score,
            )

        decision: Decision = self.policies.evaluate(agent_id, action, context)

        if decision.requires_escalation:
            escalation_id = self.audit_log.log_escalation(
                agent_id,
                action,
                context,
                decision.reason,
                self.config.escalation_assignee,
                escalation_rule=decision.to_dict()["escalationRule"],
            )
            logger.info("Action %s for %s escalated: %s", action, agent_id, escalation_id)
            return ExecutionResult(
                success=False,
                agent_id=agent_id,
                action=action,
                requires_escalation=True,
                escalation_id=escalation_id,
                reason=decision.reason,
                escalation_rule=decision.to_dict()["escalationRule"],
            )

        if not decision.allowed:
            return ExecutionResult(
                success=False,
                agent_id=agent_id,
                action=action,
                policy_denied=True,
                reason=decision.reason,
                error=decision.reason,
            )

        start = time.perf_counter()
        success = True
        output: Any = None
        error: Optional[str] = None
        if task is not None:
            try:
                if inspect.iscoroutinefunction(task):
                    output = await task(context)
                else:
                    # Blocking callables run off the event loop
                    output = await asyncio.to_thread(task, context)
                    if inspect.isawaitable(output):
                        output = await output
            except Exception as e:
                success = False
                error = str(e) or type(e).__name__
                logger.error("Task %s failed for agent %s: %s", action, agent_id, error)
        elapsed_ms = round((time.perf_counter() - start) * 1000, 3)

        self.audit_log.log_action(
            agent_id,
            action,
            context,
            {"success": success, "output": output if success else None, "error": error},
        )
        metrics.record_action(success)

        if success:
            trust = self.identities.increment_trust_score(agent_id, TRUST_REWARD_SUCCESS, "Successful action execution")
        else:
            trust = self.identities.decrement_trust_score(agent_id, TRUST_PENALTY_FAILURE, "Failed action execution")

        return ExecutionResult(
            success=success,
            agent_id=agent_id,
            action=action,
            output=output if success else None,
            error=error,
            trust_score=trust,
            execution_time_ms=elapsed_ms,
        )

    def resolve_escalation(
        self,
        escalation_id: str,
        decision: str,
        notes: Optional[str] = None,
        resolved_by: str = "human",
    ) -> Resolution:
        """Record a human decision on an escalation.

        This only writes the audit record; re-running the original action is
        the caller's business.
        """
        if not isinstance(decision, str) or not decision.strip():
            raise governance_error(CLAW_E_BAD_REQUEST, "Escalation decision must be a non-empty string")

        original = self.audit_log.find_escalation(escalation_id)
        if original is None:
            logger.warning("Resolving unknown escalation: %s", escalation_id)

        entry = self.audit_log.log_escalation_resolution(
            escalation_id,
            resolved_by,
            decision,
            notes,
            agent_id=original.get("agentId") if original else None,
            action=original.get("action") if original else None,
        )
        logger.info("Escalation %s resolved: %s by %s", escalation_id, decision, resolved_by)
        return Resolution(
            escalation_id=escalation_id,
            decision=decision,
            resolved_by=resolved_by,
            notes=notes,
            timestamp=entry.get("timestamp"),
        )

    # ------------------------------------------------------------------
    # Convenience passthroughs
    # ------------------------------------------------------------------

    def check_permission(self, agent_id: str, action: str, context: Optional[Mapping[str, Any]] = None) -> Decision:
        return self.policies.evaluate(agent_id, action, context)

    def sign_message(self, agent_id: str, message: Union[str, bytes]) -> str:
        return self.identities.sign_message(agent_id, message)

    def reload_policies(self) -> int:
        return self.policies.reload_policies()

    def get_audit_history(self, agent_id: str, **filters: Any) -> List[Dict[str, Any]]:
        return self.audit_log.query(agent_id=agent_id, **filters)

    def generate_compliance_report(self, start_date: Any, end_date: Any) -> Dict[str, Any]:
        report = self.audit_log.generate_compliance_report(start_date, end_date)
        report["retentionDays"] = self.config.retention_days
        return report

    def health_check(self, agent_id: str) -> Dict[str, Any]:
        """Report identity, policy and trust state for one agent.

        Read-only: nothing is audited and the verification history is untouched.
        """
        identity = self.identities.get_identity(agent_id)
        has_policy = self.policies.get_policy(agent_id) is not None
        trust = identity.trust_score if identity is not None else 0
        return {
            "agentId": agent_id,
            "status": identity.status if identity is not None else "unknown",
            "trustScore": trust,
            "hasPolicy": has_policy,
            "identityVerified": identity is not None and identity.status == STATUS_ACTIVE,
            "healthy": identity is not None and has_policy and trust > self.config.healthy_trust_threshold,
        }


@dataclass
class GovernedAgent:
    """Per-agent facade over a GovernanceGateway."""

    gateway: GovernanceGateway
    agent_id: str
    auto_create_identity: Optional[bool] = None
    name: Optional[str] = None
    role: Optional[str] = None
    owner: Optional[str] = None
    require_signature: Optional[bool] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Unset flags follow the gateway configuration
        if self.auto_create_identity is None:
            self.auto_create_identity = self.gateway.config.auto_create_identity
        if self.require_signature is None:
            self.require_signature = self.gateway.config.require_signature

        if self.gateway.identities.has_identity(self.agent_id):
            return
        if not self.auto_create_identity:
            raise governance_error(
                CLAW_E_IDENTITY_NOT_FOUND,
                f"Identity not found for agent {self.agent_id} and auto-create disabled",
                http_status=404,
                agent_id=self.agent_id,
            )
        self.gateway.identities.create_identity(
            self.agent_id,
            {
                **self.metadata,
                "name": self.name or self.agent_id,
                "role": self.role or "agent",
                "owner": self.owner,
            },
        )

    @staticmethod
    def signing_payload(context: Mapping[str, Any]) -> str:
        """Canonical message a caller signs for a context (signature key excluded)."""
        return canonical_json_dumps({k: v for k, v in context.items() if k != "signature"})

    def _credentials(self, context: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        if not self.require_signature or "signature" not in context:
            return None
        message = context.get("message")
        if message is None:
            message = self.signing_payload(context)
        return {"signature": context["signature"], "message": message}

    async def execute(
        self,
        action: str,
        context: Optional[Mapping[str, Any]] = None,
        task: Optional[Task] = None,
    ) -> ExecutionResult:
        context = dict(context or {})
        return await self.gateway.execute(self.agent_id, action, context, task, self._credentials(context))

    def check_permission(self, action: str, context: Optional[Mapping[str, Any]] = None) -> Decision:
        return self.gateway.check_permission(self.agent_id, action, context)

    def sign(self, message: Union[str, bytes]) -> str:
        return self.gateway.sign_message(self.agent_id, message)

    def get_trust_score(self) -> int:
        return self.gateway.identities.get_trust_score(self.agent_id)

    def get_audit_history(self, **filters: Any) -> List[Dict[str, Any]]:
        return self.gateway.get_audit_history(self.agent_id, **filters)

    def health_check(self) -> Dict[str, Any]:
        return self.gateway.health_check(self.agent_id)
