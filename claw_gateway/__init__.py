"""Claw governance gateway package.

Governance layer for autonomous agents:

- Cryptographic agent identities (RSA-2048) with trust scoring and revocation
- Declarative per-agent policies (allow / deny / escalate, default deny)
- Hash-chained, segmented JSONL audit log with compliance reporting
- An async orchestrator tying the three together

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from claw_gateway import GovernanceGateway, GovernedAgent, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "AuditLog",
    "GovernanceConfig",
    "GovernanceError",
    "GovernanceGateway",
    "GovernedAgent",
    "IdentityRegistry",
    "PolicyEngine",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "AuditLog": ("claw_gateway.audit_log", "AuditLog"),
    "GovernanceConfig": ("claw_gateway.config", "GovernanceConfig"),
    "GovernanceError": ("claw_gateway.errors", "GovernanceError"),
    "GovernanceGateway": ("claw_gateway.governance", "GovernanceGateway"),
    "GovernedAgent": ("claw_gateway.governance", "GovernedAgent"),
    "IdentityRegistry": ("claw_gateway.identity", "IdentityRegistry"),
    "PolicyEngine": ("claw_gateway.policy", "PolicyEngine"),
    "create_app": ("claw_gateway.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'claw_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
