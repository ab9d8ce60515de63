import asyncio
import threading

import pytest

from claw_gateway.audit_log import AuditLog
from claw_gateway.config import GovernanceConfig
from claw_gateway.errors import CLAW_E_IDENTITY_NOT_FOUND, GovernanceError
from claw_gateway.governance import GovernanceGateway, GovernedAgent
from claw_gateway.identity import IdentityRegistry
from claw_gateway.policy import PolicyEngine


POLICIES = [
    {
        "agent": "agent-1",
        "permissions": {
            "allow": ["read:*", "refund"],
            "deny": ["delete:*"],
            "escalate": ["refund_requests", {"action": "refund", "condition": "amount > 500"}],
        },
    }
]


@pytest.fixture
def gateway(tmp_path):
    audit = AuditLog(tmp_path / "audit")
    identities = IdentityRegistry(audit, tmp_path / "identities")
    policies = PolicyEngine(audit, POLICIES)
    gw = GovernanceGateway(audit, identities, policies, config=GovernanceConfig(escalation_assignee="risk-desk"))
    identities.create_identity("agent-1")
    return gw


def _count(gw, entry_type, agent_id="agent-1"):
    return len(gw.audit_log.query(agent_id=agent_id, entry_type=entry_type))


# -----------------------
# End-to-end scenarios
# -----------------------

@pytest.mark.asyncio
async def test_allowed_action_runs_task_and_rewards_trust(gateway):
    gateway.identities.decrement_trust_score("agent-1", 10, "setup")

    result = await gateway.execute("agent-1", "read:x", {"id": 1}, task=lambda ctx: {"echo": ctx["id"]})
    assert result.success
    assert result.output == {"echo": 1}
    assert result.trust_score == 91
    assert result.execution_time_ms is not None

    d = result.to_dict()
    assert d["success"] is True
    assert d["output"] == {"echo": 1}
    assert d["trustScore"] == 91
    assert "executionTime" in d

    (action_entry,) = gateway.audit_log.query(entry_type="agent_action")
    assert action_entry["result"]["success"] is True
    assert action_entry["result"]["output"] == {"echo": 1}


@pytest.mark.asyncio
async def test_async_task_is_awaited(gateway):
    async def task(ctx):
        await asyncio.sleep(0)
        return "done"

    result = await gateway.execute("agent-1", "read:x", {}, task=task)
    assert result.success
    assert result.output == "done"


@pytest.mark.asyncio
async def test_sync_task_runs_off_the_event_loop(gateway):
    loop_thread = threading.get_ident()
    result = await gateway.execute("agent-1", "read:x", {}, task=lambda ctx: threading.get_ident())
    assert result.success
    assert result.output != loop_thread


@pytest.mark.asyncio
async def test_no_task_is_a_successful_noop(gateway):
    result = await gateway.execute("agent-1", "read:x")
    assert result.success
    assert result.output is None
    assert _count(gateway, "agent_action") == 1


@pytest.mark.asyncio
async def test_denied_action_skips_task_and_trust(gateway):
    called = []
    result = await gateway.execute("agent-1", "delete:x", {}, task=lambda ctx: called.append(ctx))
    assert not result.success
    assert result.policy_denied
    assert result.error == "Action explicitly denied by policy rule: delete:*"
    assert result.to_dict()["policyDenied"] is True
    assert called == []
    assert gateway.identities.get_trust_score("agent-1") == 100
    assert _count(gateway, "agent_action") == 0


@pytest.mark.asyncio
async def test_escalation_logs_pending_entry(gateway):
    result = await gateway.execute("agent-1", "refund_requests", {"amount": 600})
    assert not result.success
    assert result.requires_escalation
    assert result.escalation_id.startswith("esc_")
    assert result.reason == "Action requires human escalation: refund_requests"
    assert result.escalation_rule == "refund_requests"

    d = result.to_dict()
    assert d["requiresEscalation"] is True
    assert d["escalationId"] == result.escalation_id

    entry = gateway.audit_log.find_escalation(result.escalation_id)
    assert entry["decision"]["assignedTo"] == "risk-desk"
    assert entry["decision"]["status"] == "pending"
    assert _count(gateway, "agent_action") == 0
    assert gateway.identities.get_trust_score("agent-1") == 100


@pytest.mark.asyncio
async def test_conditional_escalation_scenario(gateway):
    low = await gateway.execute("agent-1", "refund", {"amount": 300})
    assert low.success
    assert not low.requires_escalation

    high = await gateway.execute("agent-1", "refund", {"amount": 700})
    assert high.requires_escalation
    assert high.escalation_rule == {"action": "refund", "condition": "amount > 500"}


@pytest.mark.asyncio
async def test_unknown_agent_stops_before_policy(gateway):
    result = await gateway.execute("ghost", "read:x", {})
    assert not result.success
    assert result.error == "Identity verification failed: Agent identity not found"
    assert result.trust_score == 0
    assert _count(gateway, "policy_decision", agent_id="ghost") == 0
    assert _count(gateway, "identity_verification", agent_id="ghost") == 1


@pytest.mark.asyncio
async def test_repeated_failures_decrement_without_revoking(gateway):
    def boom(ctx):
        raise RuntimeError("downstream unavailable")

    scores = []
    for _ in range(5):
        result = await gateway.execute("agent-1", "read:x", {}, task=boom)
        assert not result.success
        assert result.error == "downstream unavailable"
        scores.append(result.trust_score)

    assert scores == [95, 90, 85, 80, 75]
    assert gateway.identities.get_identity("agent-1").status == "active"


@pytest.mark.asyncio
async def test_signature_credentials_checked(gateway):
    sig = gateway.sign_message("agent-1", "payload")
    ok = await gateway.execute("agent-1", "read:x", {}, credentials={"signature": sig, "message": "payload"})
    assert ok.success

    bad = await gateway.execute("agent-1", "read:x", {}, credentials={"signature": sig, "message": "other"})
    assert not bad.success
    assert bad.error == "Identity verification failed: Invalid signature"


# -----------------------
# Escalation resolution
# -----------------------

@pytest.mark.asyncio
async def test_resolve_escalation_only_logs(gateway):
    result = await gateway.execute("agent-1", "refund_requests", {"amount": 600})
    resolution = gateway.resolve_escalation(result.escalation_id, "approved", "ok by manager", "manager-7")

    assert resolution.decision == "approved"
    assert resolution.resolved_by == "manager-7"
    assert resolution.to_dict()["escalationId"] == result.escalation_id

    (entry,) = gateway.audit_log.query(entry_type="escalation_resolution")
    assert entry["agentId"] == "agent-1"
    assert entry["action"] == "refund_requests"
    assert entry["decision"]["resolution"] == "approved"
    assert entry["decision"]["notes"] == "ok by manager"
    assert _count(gateway, "agent_action") == 0


def test_resolve_unknown_escalation_still_recorded(gateway):
    resolution = gateway.resolve_escalation("esc_unknown", "denied")
    assert resolution.resolved_by == "human"
    (entry,) = gateway.audit_log.query(entry_type="escalation_resolution")
    assert entry["agentId"] is None


def test_resolve_requires_decision(gateway):
    with pytest.raises(GovernanceError):
        gateway.resolve_escalation("esc_x", "  ")


# -----------------------
# Health / passthroughs
# -----------------------

def test_health_check(gateway):
    health = gateway.health_check("agent-1")
    assert health == {
        "agentId": "agent-1",
        "status": "active",
        "trustScore": 100,
        "hasPolicy": True,
        "identityVerified": True,
        "healthy": True,
    }

    gateway.identities.create_identity("no-policy")
    assert gateway.health_check("no-policy")["healthy"] is False

    gateway.identities.decrement_trust_score("agent-1", 50, "test")
    assert gateway.health_check("agent-1")["healthy"] is False

    unknown = gateway.health_check("ghost")
    assert unknown["status"] == "unknown"
    assert unknown["healthy"] is False
    assert unknown["identityVerified"] is False


def test_health_check_is_read_only(gateway):
    for _ in range(3):
        gateway.health_check("agent-1")
    assert gateway.audit_log.query(entry_type="identity_verification") == []
    assert gateway.identities.get_identity("agent-1").verification_count == 0

    gateway.identities.revoke_identity("agent-1", "compromised")
    health = gateway.health_check("agent-1")
    assert health["identityVerified"] is False
    assert health["status"] == "revoked"


def test_check_permission_logs_decision_only(gateway):
    d = gateway.check_permission("agent-1", "read:x")
    assert d.allowed
    assert _count(gateway, "policy_decision") == 1
    assert _count(gateway, "identity_verification") == 0


@pytest.mark.asyncio
async def test_audit_history_and_report(gateway):
    await gateway.execute("agent-1", "read:x")
    await gateway.execute("agent-1", "delete:x")

    history = gateway.get_audit_history("agent-1", entry_type="policy_decision")
    assert [e["action"] for e in history] == ["read:x", "delete:x"]

    report = gateway.generate_compliance_report(0, 32503680000000)
    assert report["summary"]["totalDecisions"] == 2
    assert report["summary"]["actions"] == 1


def test_from_config_wires_directories(tmp_path):
    policy_dir = tmp_path / "policies"
    policy_dir.mkdir()
    (policy_dir / "a.yaml").write_text("agent: a\npermissions:\n  allow: ['*']\n", encoding="utf-8")
    config = GovernanceConfig(
        policy_dir=str(policy_dir),
        audit_dir=str(tmp_path / "audit"),
        identity_dir=None,
        min_trust_score=70,
    )
    gw = GovernanceGateway.from_config(config)
    assert gw.policies.list_agents() == ["a"]
    assert gw.identities.store_dir is None
    assert gw.identities.min_trust_score == 70
    assert (tmp_path / "audit").is_dir()

    (policy_dir / "b.yaml").write_text("agent: b\n", encoding="utf-8")
    assert gw.reload_policies() == 2


# -----------------------
# GovernedAgent facade
# -----------------------

@pytest.mark.asyncio
async def test_governed_agent_auto_creates_identity(gateway):
    agent = GovernedAgent(gateway, "agent-2", name="Second", role="support", owner="ops")
    view = gateway.identities.get_identity("agent-2")
    assert view.metadata["name"] == "Second"
    assert view.metadata["role"] == "support"

    # No policy for agent-2: fail-secure default
    result = await agent.execute("read:x")
    assert result.policy_denied
    assert result.reason == "No policy found for agent: agent-2"


def test_governed_agent_without_auto_create(gateway):
    with pytest.raises(GovernanceError) as ei:
        GovernedAgent(gateway, "agent-3", auto_create_identity=False)
    assert ei.value.code == CLAW_E_IDENTITY_NOT_FOUND

    # Existing identity is reused
    GovernedAgent(gateway, "agent-1", auto_create_identity=False)


@pytest.mark.asyncio
async def test_governed_agent_signed_context(gateway):
    agent = GovernedAgent(gateway, "agent-1", require_signature=True)
    context = {"ticketId": 9, "status": "open"}
    signed = dict(context, signature=agent.sign(GovernedAgent.signing_payload(context)))

    ok = await agent.execute("read:ticket", signed)
    assert ok.success

    forged = dict(signed, ticketId=10)
    bad = await agent.execute("read:ticket", forged)
    assert not bad.success
    assert bad.error == "Identity verification failed: Invalid signature"
    assert agent.get_trust_score() == 90


def test_governed_agent_flags_follow_gateway_config(tmp_path):
    audit = AuditLog(tmp_path / "audit")
    identities = IdentityRegistry(audit)
    policies = PolicyEngine(audit, POLICIES)
    config = GovernanceConfig(auto_create_identity=False, require_signature=True, retention_days=90)
    gw = GovernanceGateway(audit, identities, policies, config=config)

    with pytest.raises(GovernanceError):
        GovernedAgent(gw, "agent-1")

    identities.create_identity("agent-1")
    agent = GovernedAgent(gw, "agent-1")
    assert agent.require_signature is True
    assert GovernedAgent(gw, "agent-1", require_signature=False).require_signature is False

    assert gw.generate_compliance_report(0, 32503680000000)["retentionDays"] == 90
