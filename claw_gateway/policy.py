"""claw_gateway.policy

Declarative per-agent policy evaluation.

Each agent has at most one Policy made of three ordered rule lists. Evaluation
uses a fixed precedence and first-match-wins inside each stage:

    escalate  >  deny  >  allow  >  default deny

Escalation rules are checked first, so an escalation beats an explicit deny for
the same action. Anything not matched is denied (fail-secure).

Patterns match `verb:resource` action strings:

    "read:customer_data"   exact
    "read:*"               prefix (trailing wildcard)
    "*:public"             suffix (leading wildcard)
    "*"                    everything

Conditional escalation rules add one comparison against the call context, e.g.
``{"action": "refund", "condition": "amount > 500"}``. The condition grammar is
deliberately a single `<field> <op> <value>` comparison with no AND/OR.

Every evaluation writes exactly one `policy_decision` audit entry.
"""

from __future__ import annotations

import json
import logging
import math
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml

from .audit_log import AuditLog
from .errors import CLAW_E_POLICY_INVALID, CLAW_E_POLICY_SOURCE, GovernanceError, governance_error
from . import metrics


logger = logging.getLogger("claw_gateway.policy")

POLICY_FILE_SUFFIXES = (".yaml", ".yml", ".json")

_CONDITION_RE = re.compile(r"(\w+)\s*([><=!]+)\s*(.+)")
_NUMBER_PREFIX_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


# ---------------------------
# Matching primitives
# ---------------------------

def match_pattern(action: str, pattern: str) -> bool:
    """Match an action against a Pattern (exact, prefix*, *suffix or *)."""
    if action == pattern:
        return True
    if pattern == "*":
        return True
    # Trailing wildcard is checked before leading wildcard.
    if pattern.endswith("*"):
        return action.startswith(pattern[:-1])
    if pattern.startswith("*"):
        return action.endswith(pattern[1:])
    return False


def _to_number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return math.nan
    if isinstance(value, (int, float)):
        return float(value)
    # Leading numeric prefix, so "700 USD" reads as 700
    m = _NUMBER_PREFIX_RE.match(str(value).strip())
    if not m:
        return math.nan
    return float(m.group(0))


def evaluate_condition(condition: str, context: Mapping[str, Any]) -> bool:
    """Evaluate `<field> <op> <value>` against the context.

    Absent fields are false. `$` and `,` are stripped from the literal value.
    Both operands are read by their leading number ("700 USD" is 700).
    Operands without one compare like NaN: ordering and `==` are false, `!=`
    is true.
    """
    m = _CONDITION_RE.match(condition.strip())
    if not m:
        return False

    field_name, operator, value_str = m.groups()
    if field_name not in context:
        return False

    value = _to_number(value_str.replace("$", "").replace(",", ""))
    actual = _to_number(context[field_name])

    if operator == ">":
        return actual > value
    if operator == "<":
        return actual < value
    if operator == ">=":
        return actual >= value
    if operator == "<=":
        return actual <= value
    if operator == "==":
        return actual == value
    if operator == "!=":
        return actual != value
    return False


# ---------------------------
# Policy model
# ---------------------------

@dataclass(frozen=True)
class ConditionalRule:
    """Escalation rule that needs both an action match and a true condition."""

    action_pattern: str
    condition: Optional[str] = None

    def matches(self, action: str, context: Mapping[str, Any]) -> bool:
        if not match_pattern(action, self.action_pattern):
            return False
        if not self.condition:
            return False
        return evaluate_condition(self.condition, context)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"action": self.action_pattern}
        if self.condition is not None:
            d["condition"] = self.condition
        return d

    def __str__(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


EscalationRule = Union[str, ConditionalRule]


def _rule_repr(rule: EscalationRule) -> Any:
    return rule.to_dict() if isinstance(rule, ConditionalRule) else rule


def _pattern_list(raw: Any, *, agent: str, key: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(p, str) and p for p in raw):
        raise governance_error(
            CLAW_E_POLICY_INVALID,
            f"Policy for agent {agent!r}: permissions.{key} must be a list of non-empty strings",
            agent=agent,
        )
    return tuple(raw)


@dataclass(frozen=True)
class Policy:
    """Immutable rule set for one agent."""

    agent_id: str
    allow_rules: Tuple[str, ...] = ()
    deny_rules: Tuple[str, ...] = ()
    escalate_rules: Tuple[EscalationRule, ...] = ()

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Policy":
        """Build a Policy from `{agent, permissions: {allow, deny, escalate}}`."""
        if not isinstance(doc, Mapping):
            raise governance_error(CLAW_E_POLICY_INVALID, "Policy document must be a mapping")
        agent = doc.get("agent")
        if not isinstance(agent, str) or not agent:
            raise governance_error(CLAW_E_POLICY_INVALID, "Policy document missing required 'agent' field")

        permissions = doc.get("permissions") or {}
        if not isinstance(permissions, Mapping):
            raise governance_error(CLAW_E_POLICY_INVALID, f"Policy for agent {agent!r}: permissions must be a mapping", agent=agent)

        raw_escalate = permissions.get("escalate")
        if raw_escalate is None:
            raw_escalate = []
        if not isinstance(raw_escalate, list):
            raise governance_error(
                CLAW_E_POLICY_INVALID,
                f"Policy for agent {agent!r}: permissions.escalate must be a list",
                agent=agent,
            )

        escalate: List[EscalationRule] = []
        for raw in raw_escalate:
            if isinstance(raw, str) and raw:
                escalate.append(raw)
            elif isinstance(raw, Mapping) and isinstance(raw.get("action"), str):
                condition = raw.get("condition")
                if condition is not None and not isinstance(condition, str):
                    raise governance_error(CLAW_E_POLICY_INVALID, f"Policy for agent {agent!r}: condition must be a string", agent=agent)
                escalate.append(ConditionalRule(action_pattern=raw["action"], condition=condition))
            else:
                raise governance_error(
                    CLAW_E_POLICY_INVALID,
                    f"Policy for agent {agent!r}: unsupported escalate rule {raw!r}",
                    agent=agent,
                )

        return cls(
            agent_id=agent,
            allow_rules=_pattern_list(permissions.get("allow"), agent=agent, key="allow"),
            deny_rules=_pattern_list(permissions.get("deny"), agent=agent, key="deny"),
            escalate_rules=tuple(escalate),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "agent": self.agent_id,
            "permissions": {
                "allow": list(self.allow_rules),
                "deny": list(self.deny_rules),
                "escalate": [_rule_repr(r) for r in self.escalate_rules],
            },
        }


@dataclass(frozen=True)
class Decision:
    allowed: bool
    requires_escalation: bool
    reason: str
    escalation_rule: Optional[EscalationRule] = None
    matched_rule: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "requiresEscalation": self.requires_escalation,
            "reason": self.reason,
            "escalationRule": _rule_repr(self.escalation_rule) if self.escalation_rule is not None else None,
        }


# ---------------------------
# Loading
# ---------------------------

def load_policy_file(path: Union[str, Path], *, validate: bool = True) -> Policy:
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as f:
            if p.suffix.lower() == ".json":
                doc = json.load(f)
            else:
                doc = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise governance_error(CLAW_E_POLICY_INVALID, f"Failed to parse policy file {p.name}: {e}", path=str(p)) from e

    if validate:
        from claw_schema_validate import validate_instance

        ok, msgs = validate_instance(doc, schema_name="policy")
        if not ok:
            raise governance_error(
                CLAW_E_POLICY_INVALID,
                f"Policy file {p.name} failed schema validation",
                path=str(p),
                errors=[m.detail for m in msgs if not m.ok],
            )

    try:
        return Policy.from_document(doc)
    except GovernanceError as e:
        e.details.setdefault("path", str(p))
        raise


def load_policy_directory(path: Union[str, Path], *, validate: bool = True) -> Dict[str, Policy]:
    """Load every policy document in a directory into a fresh map."""
    d = Path(path)
    if not d.is_dir():
        raise governance_error(CLAW_E_POLICY_SOURCE, f"Policy directory not found: {d}", http_status=500, path=str(d))

    policies: Dict[str, Policy] = {}
    for p in sorted(d.iterdir()):
        if not p.is_file() or p.suffix.lower() not in POLICY_FILE_SUFFIXES:
            continue
        policy = load_policy_file(p, validate=validate)
        if policy.agent_id in policies:
            raise governance_error(
                CLAW_E_POLICY_INVALID,
                f"Duplicate policy for agent {policy.agent_id!r} in {p.name}",
                agent=policy.agent_id,
                path=str(p),
            )
        policies[policy.agent_id] = policy
        logger.info("Loaded policy for agent: %s", policy.agent_id)

    logger.info("Loaded %d agent policies from %s", len(policies), d)
    return policies


def _coerce_policies(policies: Union[Mapping[str, Any], Iterable[Any]]) -> Dict[str, Policy]:
    items: Iterable[Any] = policies.values() if isinstance(policies, Mapping) else policies
    out: Dict[str, Policy] = {}
    for item in items:
        policy = item if isinstance(item, Policy) else Policy.from_document(item)
        if policy.agent_id in out:
            raise governance_error(CLAW_E_POLICY_INVALID, f"Duplicate policy for agent {policy.agent_id!r}", agent=policy.agent_id)
        out[policy.agent_id] = policy
    return out


# ---------------------------
# Engine
# ---------------------------

class PolicyEngine:
    """Evaluates actions against the loaded per-agent policies."""

    def __init__(
        self,
        audit_log: AuditLog,
        policies: Optional[Union[Mapping[str, Any], Iterable[Any]]] = None,
        *,
        policy_dir: Optional[Union[str, Path]] = None,
    ):
        self.audit_log = audit_log
        self.policy_dir = Path(policy_dir) if policy_dir is not None else None
        self._policies: Dict[str, Policy] = {}
        if policies is not None:
            self._policies = _coerce_policies(policies)
        elif self.policy_dir is not None:
            self._policies = load_policy_directory(self.policy_dir)

    def reload_policies(self, policies: Optional[Union[Mapping[str, Any], Iterable[Any]]] = None) -> int:
        """Replace the whole rule map. Returns the number of policies loaded.

        The new map is built first and then swapped in with one assignment, so
        a failed reload leaves the previous policies in force.
        """
        if policies is not None:
            fresh = _coerce_policies(policies)
        elif self.policy_dir is not None:
            fresh = load_policy_directory(self.policy_dir)
        else:
            raise governance_error(CLAW_E_POLICY_SOURCE, "No policy source configured for reload", http_status=500)

        self._policies = fresh
        logger.info("Reloaded %d agent policies", len(fresh))
        return len(fresh)

    def get_policy(self, agent_id: str) -> Optional[Policy]:
        return self._policies.get(agent_id)

    def list_agents(self) -> List[str]:
        return sorted(self._policies.keys())

    def evaluate(self, agent_id: str, action: str, context: Optional[Mapping[str, Any]] = None) -> Decision:
        context = context or {}
        start = time.perf_counter()
        # Snapshot: a concurrent reload swaps the map, never mutates it.
        policy = self._policies.get(agent_id)

        decision = self._decide(policy, agent_id, action, context)

        elapsed = time.perf_counter() - start
        self.audit_log.log_decision(agent_id, action, context, decision.to_dict(), round(elapsed * 1000, 3))
        metrics.record_decision(metrics.decision_outcome(decision.allowed, decision.requires_escalation), elapsed)
        logger.debug("Policy decision for %s %s: %s", agent_id, action, decision.reason)
        return decision

    check_permission = evaluate

    @staticmethod
    def _decide(policy: Optional[Policy], agent_id: str, action: str, context: Mapping[str, Any]) -> Decision:
        if policy is None:
            return Decision(False, False, f"No policy found for agent: {agent_id}")

        for rule in policy.escalate_rules:
            if isinstance(rule, ConditionalRule):
                matched = rule.matches(action, context)
            else:
                matched = match_pattern(action, rule)
            if matched:
                return Decision(
                    allowed=False,
                    requires_escalation=True,
                    reason=f"Action requires human escalation: {rule}",
                    escalation_rule=rule,
                    matched_rule=str(rule),
                )

        for rule in policy.deny_rules:
            if match_pattern(action, rule):
                return Decision(False, False, f"Action explicitly denied by policy rule: {rule}", matched_rule=rule)

        for rule in policy.allow_rules:
            if match_pattern(action, rule):
                return Decision(True, False, f"Action allowed by policy rule: {rule}", matched_rule=rule)

        return Decision(False, False, "Action not explicitly allowed (default deny)")
