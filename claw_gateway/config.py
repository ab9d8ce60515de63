"""Runtime configuration for the governance gateway.

Environment variables:
- CLAW_POLICY_DIR: directory of per-agent policy documents (.yaml/.yml/.json).
- CLAW_AUDIT_DIR: directory holding audit log segments.
- CLAW_IDENTITY_DIR: directory of per-agent identity records; empty keeps
  identities in memory only.
- CLAW_AUDIT_ROTATION_MB: rotate the active audit segment past this size.
- CLAW_AUDIT_RETENTION_DAYS: retention period reported to compliance tooling.
- CLAW_MIN_TRUST_SCORE: verification fails below this trust score.
- CLAW_HEALTHY_TRUST_THRESHOLD: health checks require a trust score above this.
- CLAW_ESCALATION_ASSIGNEE: who escalations are assigned to.
- CLAW_AUTO_CREATE_IDENTITY: create missing identities for GovernedAgent.
- CLAW_REQUIRE_SIGNATURE: GovernedAgent verifies context signatures.
- CLAW_METRICS_ENABLED: mount /metrics on the HTTP app.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .errors import CLAW_E_CONFIG_INVALID, governance_error


# Trust deltas applied by the orchestrator
TRUST_REWARD_SUCCESS = 1
TRUST_PENALTY_FAILURE = 5
TRUST_PENALTY_BAD_SIGNATURE = 10


def _get_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


@dataclass
class GovernanceConfig:
    """Configuration for GovernanceGateway.from_config."""

    policy_dir: str = "policies"
    audit_dir: str = os.path.join("logs", "audit")
    identity_dir: Optional[str] = "identities"
    rotation_size_mb: float = 100.0
    retention_days: int = 2555
    min_trust_score: int = 50
    healthy_trust_threshold: int = 50
    escalation_assignee: str = "human-review"
    auto_create_identity: bool = True
    require_signature: bool = False
    metrics_enabled: bool = True

    @property
    def rotation_size_bytes(self) -> int:
        return int(self.rotation_size_mb * 1024 * 1024)

    @classmethod
    def from_env(cls) -> "GovernanceConfig":
        def _get_int(name: str, default: int) -> int:
            raw = (os.getenv(name, "") or "").strip()
            if not raw:
                return default
            try:
                return int(raw)
            except ValueError:
                raise governance_error(CLAW_E_CONFIG_INVALID, f"{name} must be an integer", name=name, value=raw)

        def _get_float(name: str, default: float) -> float:
            raw = (os.getenv(name, "") or "").strip()
            if not raw:
                return default
            try:
                return float(raw)
            except ValueError:
                raise governance_error(CLAW_E_CONFIG_INVALID, f"{name} must be a number", name=name, value=raw)

        identity_dir: Optional[str] = os.getenv("CLAW_IDENTITY_DIR", cls.identity_dir)
        if identity_dir is not None and not identity_dir.strip():
            identity_dir = None

        rotation = _get_float("CLAW_AUDIT_ROTATION_MB", cls.rotation_size_mb)
        retention = _get_int("CLAW_AUDIT_RETENTION_DAYS", cls.retention_days)
        min_trust = _get_int("CLAW_MIN_TRUST_SCORE", cls.min_trust_score)
        healthy = _get_int("CLAW_HEALTHY_TRUST_THRESHOLD", cls.healthy_trust_threshold)

        # Clamp
        if rotation <= 0:
            rotation = cls.rotation_size_mb
        if retention < 1:
            retention = 1
        min_trust = max(0, min(100, min_trust))
        healthy = max(0, min(100, healthy))

        return cls(
            policy_dir=os.getenv("CLAW_POLICY_DIR", cls.policy_dir),
            audit_dir=os.getenv("CLAW_AUDIT_DIR", cls.audit_dir),
            identity_dir=identity_dir,
            rotation_size_mb=rotation,
            retention_days=retention,
            min_trust_score=min_trust,
            healthy_trust_threshold=healthy,
            escalation_assignee=(os.getenv("CLAW_ESCALATION_ASSIGNEE", "") or "").strip() or cls.escalation_assignee,
            auto_create_identity=_get_bool("CLAW_AUTO_CREATE_IDENTITY", cls.auto_create_identity),
            require_signature=_get_bool("CLAW_REQUIRE_SIGNATURE", cls.require_signature),
            metrics_enabled=_get_bool("CLAW_METRICS_ENABLED", cls.metrics_enabled),
        )
