"""Agent identity registry with trust scoring and revocation.

Every agent owns an RSA-2048 keypair, a trust score in [0, 100] and a status
that only ever moves from ``active`` to ``revoked``.

Verification order (first failing check wins):

1. unknown agent            -> not verified, trust 0
2. revoked identity         -> not verified, trust 0
3. bad signature (if given) -> trust -10, not verified
4. trust score below gate   -> not verified
5. otherwise verified; the attempt is appended to a bounded history

Each verify call writes exactly one ``identity_verification`` audit entry.
A decrement that lands exactly on zero revokes the identity as an explicit
post-condition of the decrement, and that revocation is audited separately.

Identities live in memory and, when a store directory is configured, in one
JSON file per agent. Private keys never leave this module except as
signatures.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .audit_log import AuditLog
from .config import TRUST_PENALTY_BAD_SIGNATURE
from .crypto import RSAKeyPair, _now_iso
from .errors import (
    CLAW_E_BAD_REQUEST,
    CLAW_E_IDENTITY_EXISTS,
    CLAW_E_IDENTITY_NOT_FOUND,
    CLAW_E_IDENTITY_STORE,
    GovernanceError,
    governance_error,
)
from . import metrics


logger = logging.getLogger("claw_gateway.identity")

STATUS_ACTIVE = "active"
STATUS_REVOKED = "revoked"

MAX_TRUST_SCORE = 100
MIN_TRUST_SCORE = 0
DEFAULT_VERIFICATION_THRESHOLD = 50
VERIFICATION_HISTORY_LIMIT = 100

REASON_NOT_FOUND = "Agent identity not found"
REASON_REVOKED = "Agent identity has been revoked"
REASON_INVALID_SIGNATURE = "Invalid signature"
REASON_TRUST_TOO_LOW = "Trust score too low for operation"
REASON_VERIFIED = "Identity verified successfully"
REVOKED_TRUST_ZERO = "trust score reached zero"

_AGENT_ID_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._:@-]*$")


def _clamp(score: int) -> int:
    return max(MIN_TRUST_SCORE, min(MAX_TRUST_SCORE, int(score)))


def _record_errors(rec: Mapping[str, Any]) -> List[str]:
    from claw_schema_validate import validate_instance

    ok, msgs = validate_instance(rec, schema_name="identity")
    return [] if ok else [m.detail for m in msgs if not m.ok]


def _check_record(identity: "Identity") -> None:
    """Reject identity state the store could not load back."""
    errors = _record_errors(identity.to_record())
    if errors:
        raise governance_error(
            CLAW_E_BAD_REQUEST,
            f"Invalid identity record for agent: {identity.agent_id}",
            agent_id=identity.agent_id,
            errors=errors,
        )


@dataclass
class Identity:
    agent_id: str
    keypair: RSAKeyPair
    metadata: Dict[str, Any]
    status: str = STATUS_ACTIVE
    trust_score: int = MAX_TRUST_SCORE
    verification_history: List[Dict[str, Any]] = field(default_factory=list)
    last_verified: Optional[str] = None
    archived_keys: List[Dict[str, str]] = field(default_factory=list)
    key_rotated_at: Optional[str] = None
    revoked_at: Optional[str] = None
    revocation_reason: Optional[str] = None

    @property
    def public_key(self) -> str:
        return self.keypair.public_key_pem

    @property
    def is_revoked(self) -> bool:
        return self.status == STATUS_REVOKED

    def to_record(self) -> Dict[str, Any]:
        """Persisted form (includes the private key; stays inside the store)."""
        return {
            "agentId": self.agent_id,
            "publicKey": self.keypair.public_key_pem,
            "privateKey": self.keypair.private_key_pem,
            "metadata": self.metadata,
            "status": self.status,
            "trustScore": self.trust_score,
            "verificationHistory": self.verification_history,
            "lastVerified": self.last_verified,
            "archivedKeys": self.archived_keys,
            "keyRotatedAt": self.key_rotated_at,
            "revokedAt": self.revoked_at,
            "revocationReason": self.revocation_reason,
        }

    @classmethod
    def from_record(cls, rec: Mapping[str, Any]) -> "Identity":
        return cls(
            agent_id=str(rec["agentId"]),
            keypair=RSAKeyPair(public_key_pem=rec["publicKey"], private_key_pem=rec["privateKey"]),
            metadata=dict(rec.get("metadata") or {}),
            status=rec.get("status", STATUS_ACTIVE),
            trust_score=_clamp(rec.get("trustScore", MAX_TRUST_SCORE)),
            verification_history=list(rec.get("verificationHistory") or [])[-VERIFICATION_HISTORY_LIMIT:],
            last_verified=rec.get("lastVerified"),
            archived_keys=list(rec.get("archivedKeys") or []),
            key_rotated_at=rec.get("keyRotatedAt"),
            revoked_at=rec.get("revokedAt"),
            revocation_reason=rec.get("revocationReason"),
        )

    def public_view(self) -> "PublicIdentityView":
        return PublicIdentityView(
            agent_id=self.agent_id,
            public_key=self.keypair.public_key_pem,
            metadata=dict(self.metadata),
            status=self.status,
            trust_score=self.trust_score,
            last_verified=self.last_verified,
            verification_count=len(self.verification_history),
            archived_key_count=len(self.archived_keys),
        )


@dataclass(frozen=True)
class PublicIdentityView:
    """Identity as seen outside the registry: no private key."""

    agent_id: str
    public_key: str
    metadata: Dict[str, Any]
    status: str
    trust_score: int
    last_verified: Optional[str] = None
    verification_count: int = 0
    archived_key_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "publicKey": self.public_key,
            "metadata": self.metadata,
            "status": self.status,
            "trustScore": self.trust_score,
            "lastVerified": self.last_verified,
            "verificationCount": self.verification_count,
            "archivedKeyCount": self.archived_key_count,
        }


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    reason: str
    trust_score: int
    method: str = "identity_check"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verified": self.verified,
            "reason": self.reason,
            "trustScore": self.trust_score,
            "method": self.method,
        }


class IdentityRegistry:
    """Owns agent identities, private keys and trust scores."""

    def __init__(
        self,
        audit_log: AuditLog,
        store_dir: Optional[Union[str, Path]] = None,
        *,
        min_trust_score: int = DEFAULT_VERIFICATION_THRESHOLD,
    ):
        self.audit_log = audit_log
        self.store_dir = Path(store_dir) if store_dir is not None else None
        self.min_trust_score = int(min_trust_score)
        # Serializes every read-modify-write of identity state.
        self._lock = threading.RLock()
        self._identities: Dict[str, Identity] = {}

        if self.store_dir is not None:
            self.store_dir.mkdir(parents=True, exist_ok=True)
            self._load_store()
        logger.info("Identity registry initialized with %d agents", len(self._identities))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_store(self) -> None:
        for p in sorted(self.store_dir.glob("*.json")):
            try:
                with p.open("r", encoding="utf-8") as f:
                    rec = json.load(f)
            except (OSError, ValueError) as e:
                raise governance_error(
                    CLAW_E_IDENTITY_STORE, f"Identity record unreadable: {p.name}: {e}", http_status=500, path=str(p)
                ) from e

            errors = _record_errors(rec)
            if errors:
                raise governance_error(
                    CLAW_E_IDENTITY_STORE,
                    f"Identity record {p.name} failed schema validation",
                    http_status=500,
                    path=str(p),
                    errors=errors,
                )
            identity = Identity.from_record(rec)
            self._identities[identity.agent_id] = identity

    def _save(self, identity: Identity) -> None:
        if self.store_dir is None:
            return
        path = self.store_dir / f"{identity.agent_id}.json"
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(identity.to_record(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _require(self, agent_id: str) -> Identity:
        identity = self._identities.get(agent_id)
        if identity is None:
            raise governance_error(
                CLAW_E_IDENTITY_NOT_FOUND, f"Identity not found for agent: {agent_id}", http_status=404, agent_id=agent_id
            )
        return identity

    def has_identity(self, agent_id: str) -> bool:
        return agent_id in self._identities

    def get_identity(self, agent_id: str) -> Optional[PublicIdentityView]:
        with self._lock:
            identity = self._identities.get(agent_id)
            return identity.public_view() if identity is not None else None

    def get_trust_score(self, agent_id: str) -> int:
        identity = self._identities.get(agent_id)
        return identity.trust_score if identity is not None else 0

    def list_agents(
        self,
        *,
        status: Optional[str] = None,
        min_trust_score: Optional[int] = None,
    ) -> List[PublicIdentityView]:
        with self._lock:
            views = []
            for identity in self._identities.values():
                if status is not None and identity.status != status:
                    continue
                if min_trust_score is not None and identity.trust_score < min_trust_score:
                    continue
                views.append(identity.public_view())
            return sorted(views, key=lambda v: v.agent_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_identity(self, agent_id: str, metadata: Optional[Mapping[str, Any]] = None) -> PublicIdentityView:
        if not isinstance(agent_id, str) or not _AGENT_ID_RE.match(agent_id):
            raise governance_error(CLAW_E_BAD_REQUEST, f"Invalid agent id: {agent_id!r}", agent_id=agent_id)

        metadata = dict(metadata or {})
        with self._lock:
            if agent_id in self._identities:
                raise governance_error(
                    CLAW_E_IDENTITY_EXISTS, f"Identity already exists for agent: {agent_id}", http_status=409, agent_id=agent_id
                )

            identity = Identity(
                agent_id=agent_id,
                keypair=RSAKeyPair.generate(),
                metadata={
                    "name": metadata.get("name") or agent_id,
                    "role": metadata.get("role") or "agent",
                    "owner": metadata.get("owner"),
                    "createdAt": _now_iso(),
                    "createdBy": metadata.get("createdBy") or "system",
                    "tags": list(metadata.get("tags") or []),
                },
            )
            _check_record(identity)
            self._identities[agent_id] = identity
            self._save(identity)

        logger.info("Created identity for agent: %s (key %s)", agent_id, identity.keypair.fingerprint())
        return identity.public_view()

    def update_metadata(self, agent_id: str, updates: Mapping[str, Any]) -> PublicIdentityView:
        with self._lock:
            identity = self._require(agent_id)
            protected = {"createdAt", "createdBy"}
            merged = dict(identity.metadata)
            merged.update({k: v for k, v in updates.items() if k not in protected})
            merged["updatedAt"] = _now_iso()
            previous, identity.metadata = identity.metadata, merged
            try:
                _check_record(identity)
            except GovernanceError:
                identity.metadata = previous
                raise
            self._save(identity)
            logger.info("Updated metadata for agent: %s", agent_id)
            return identity.public_view()

    def revoke_identity(self, agent_id: str, reason: str) -> PublicIdentityView:
        """Revoke an identity. Revocation cannot be undone; repeat calls are no-ops."""
        with self._lock:
            identity = self._require(agent_id)
            if identity.is_revoked:
                logger.info("Identity for agent %s already revoked", agent_id)
                return identity.public_view()
            self._revoke_locked(identity, reason, cause="manual")
            return identity.public_view()

    def _revoke_locked(self, identity: Identity, reason: str, *, cause: str) -> None:
        identity.status = STATUS_REVOKED
        identity.revoked_at = _now_iso()
        identity.revocation_reason = reason
        identity.trust_score = MIN_TRUST_SCORE
        self._save(identity)

        metrics.record_revocation(cause)
        logger.warning("Revoked identity for agent: %s (%s)", identity.agent_id, reason)
        self.audit_log.log_identity_verification(
            identity.agent_id,
            "revocation",
            {"verified": False, "reason": f"revoked: {reason}", "trustScore": MIN_TRUST_SCORE},
        )

    def rotate_keypair(self, agent_id: str) -> PublicIdentityView:
        """Archive the current public key and install a fresh keypair."""
        fresh = RSAKeyPair.generate()
        with self._lock:
            identity = self._require(agent_id)
            now = _now_iso()
            identity.archived_keys.append({"publicKey": identity.keypair.public_key_pem, "archivedAt": now})
            identity.keypair = fresh
            identity.key_rotated_at = now
            self._save(identity)
            logger.info("Rotated keypair for agent: %s (key %s)", agent_id, fresh.fingerprint())
            return identity.public_view()

    # ------------------------------------------------------------------
    # Trust
    # ------------------------------------------------------------------

    def increment_trust_score(self, agent_id: str, amount: int, reason: str) -> int:
        if amount < 0:
            raise governance_error(CLAW_E_BAD_REQUEST, "Trust increment must be non-negative", amount=amount)
        with self._lock:
            identity = self._require(agent_id)
            current = identity.trust_score
            identity.trust_score = _clamp(current + amount)
            self._save(identity)
            logger.info("Trust score increased for %s: %d -> %d (%s)", agent_id, current, identity.trust_score, reason)
            return identity.trust_score

    def decrement_trust_score(self, agent_id: str, amount: int, reason: str) -> int:
        if amount < 0:
            raise governance_error(CLAW_E_BAD_REQUEST, "Trust decrement must be non-negative", amount=amount)
        with self._lock:
            identity = self._require(agent_id)
            current = identity.trust_score
            identity.trust_score = _clamp(current - amount)
            self._save(identity)
            logger.warning("Trust score decreased for %s: %d -> %d (%s)", agent_id, current, identity.trust_score, reason)

            if identity.trust_score == MIN_TRUST_SCORE and not identity.is_revoked:
                self._revoke_locked(identity, REVOKED_TRUST_ZERO, cause="trust_zero")
            return identity.trust_score

    # ------------------------------------------------------------------
    # Verification / signing
    # ------------------------------------------------------------------

    def sign_message(self, agent_id: str, message: Union[str, bytes]) -> str:
        with self._lock:
            identity = self._require(agent_id)
            keypair = identity.keypair
        return keypair.sign(message)

    def verify_signature(self, agent_id: str, message: Union[str, bytes], signature: str) -> bool:
        with self._lock:
            identity = self._require(agent_id)
            keypair = identity.keypair.public_only()
        return keypair.verify(message, signature)

    def verify_identity(self, agent_id: str, credentials: Optional[Mapping[str, Any]] = None) -> VerificationResult:
        credentials = credentials or {}
        with self._lock:
            result = self._verify_locked(agent_id, credentials)
            self.audit_log.log_identity_verification(agent_id, result.method, result.to_dict())

        metrics.record_verification("verified" if result.verified else "rejected")
        if not result.verified:
            logger.info("Identity verification failed for %s: %s", agent_id, result.reason)
        return result

    def _verify_locked(self, agent_id: str, credentials: Mapping[str, Any]) -> VerificationResult:
        identity = self._identities.get(agent_id)
        if identity is None:
            return VerificationResult(False, REASON_NOT_FOUND, 0)

        if identity.is_revoked:
            return VerificationResult(False, REASON_REVOKED, 0)

        signature = credentials.get("signature")
        message = credentials.get("message")
        signed = bool(signature) and message is not None
        if signed:
            if not identity.keypair.verify(message, str(signature)):
                self.decrement_trust_score(agent_id, TRUST_PENALTY_BAD_SIGNATURE, "Failed signature verification")
                return VerificationResult(
                    False, REASON_INVALID_SIGNATURE, identity.trust_score, method="signature_verification"
                )

        if identity.trust_score < self.min_trust_score:
            return VerificationResult(False, REASON_TRUST_TOO_LOW, identity.trust_score, method="trust_score_check")

        identity.last_verified = _now_iso()
        identity.verification_history.append(
            {"timestamp": identity.last_verified, "method": "signature" if signed else "basic", "success": True}
        )
        if len(identity.verification_history) > VERIFICATION_HISTORY_LIMIT:
            identity.verification_history = identity.verification_history[-VERIFICATION_HISTORY_LIMIT:]
        self._save(identity)

        return VerificationResult(
            True, REASON_VERIFIED, identity.trust_score, method="signature_verification" if signed else "identity_check"
        )
