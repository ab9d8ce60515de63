"""Stable error taxonomy for the governance gateway.

This module defines machine-readable error codes and a single exception type
used across the policy engine, identity registry, audit log and HTTP layer.

Fail-secure decision outcomes (no policy, unknown identity, low trust,
revocation, denial) are NOT errors: they are returned as typed results.
`GovernanceError` is reserved for configuration problems, storage failures and
calls that reference something that does not exist.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Configuration / loading
CLAW_E_CONFIG_INVALID = "CLAW_E_CONFIG_INVALID"
CLAW_E_POLICY_SOURCE = "CLAW_E_POLICY_SOURCE"
CLAW_E_POLICY_INVALID = "CLAW_E_POLICY_INVALID"
CLAW_E_IDENTITY_STORE = "CLAW_E_IDENTITY_STORE"

# Identity
CLAW_E_IDENTITY_NOT_FOUND = "CLAW_E_IDENTITY_NOT_FOUND"
CLAW_E_IDENTITY_EXISTS = "CLAW_E_IDENTITY_EXISTS"

# Audit storage
CLAW_E_AUDIT_STORAGE = "CLAW_E_AUDIT_STORAGE"
CLAW_E_AUDIT_ENTRY_INVALID = "CLAW_E_AUDIT_ENTRY_INVALID"

# Generic
CLAW_E_BAD_REQUEST = "CLAW_E_BAD_REQUEST"


@dataclass
class GovernanceError(Exception):
    """Raised for broken configuration, unreadable storage or references to
    identities that do not exist.

    `as_dict()` is the JSON body the HTTP layer returns with `http_status`.
    """

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def governance_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> GovernanceError:
    """Build a GovernanceError; extra keyword arguments land in `details`."""
    return GovernanceError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
