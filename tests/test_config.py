import pytest

from claw_gateway.config import GovernanceConfig
from claw_gateway.errors import CLAW_E_CONFIG_INVALID, GovernanceError


_ENV = (
    "CLAW_POLICY_DIR",
    "CLAW_AUDIT_DIR",
    "CLAW_IDENTITY_DIR",
    "CLAW_AUDIT_ROTATION_MB",
    "CLAW_AUDIT_RETENTION_DAYS",
    "CLAW_MIN_TRUST_SCORE",
    "CLAW_HEALTHY_TRUST_THRESHOLD",
    "CLAW_ESCALATION_ASSIGNEE",
    "CLAW_AUTO_CREATE_IDENTITY",
    "CLAW_REQUIRE_SIGNATURE",
    "CLAW_METRICS_ENABLED",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    cfg = GovernanceConfig.from_env()
    assert cfg.policy_dir == "policies"
    assert cfg.identity_dir == "identities"
    assert cfg.rotation_size_bytes == 100 * 1024 * 1024
    assert cfg.retention_days == 2555
    assert cfg.min_trust_score == 50
    assert cfg.escalation_assignee == "human-review"
    assert cfg.auto_create_identity is True
    assert cfg.require_signature is False
    assert cfg.metrics_enabled is True


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("CLAW_POLICY_DIR", "/etc/claw/policies")
    monkeypatch.setenv("CLAW_AUDIT_ROTATION_MB", "0.5")
    monkeypatch.setenv("CLAW_MIN_TRUST_SCORE", "70")
    monkeypatch.setenv("CLAW_ESCALATION_ASSIGNEE", "risk-desk")
    monkeypatch.setenv("CLAW_REQUIRE_SIGNATURE", "yes")
    monkeypatch.setenv("CLAW_METRICS_ENABLED", "0")

    cfg = GovernanceConfig.from_env()
    assert cfg.policy_dir == "/etc/claw/policies"
    assert cfg.rotation_size_bytes == 512 * 1024
    assert cfg.min_trust_score == 70
    assert cfg.escalation_assignee == "risk-desk"
    assert cfg.require_signature is True
    assert cfg.metrics_enabled is False


def test_empty_identity_dir_means_in_memory(monkeypatch):
    monkeypatch.setenv("CLAW_IDENTITY_DIR", "  ")
    assert GovernanceConfig.from_env().identity_dir is None


def test_values_are_clamped(monkeypatch):
    monkeypatch.setenv("CLAW_AUDIT_ROTATION_MB", "-3")
    monkeypatch.setenv("CLAW_AUDIT_RETENTION_DAYS", "0")
    monkeypatch.setenv("CLAW_MIN_TRUST_SCORE", "250")
    monkeypatch.setenv("CLAW_HEALTHY_TRUST_THRESHOLD", "-1")

    cfg = GovernanceConfig.from_env()
    assert cfg.rotation_size_mb == 100.0
    assert cfg.retention_days == 1
    assert cfg.min_trust_score == 100
    assert cfg.healthy_trust_threshold == 0


def test_non_numeric_value_rejected(monkeypatch):
    monkeypatch.setenv("CLAW_MIN_TRUST_SCORE", "high")
    with pytest.raises(GovernanceError) as ei:
        GovernanceConfig.from_env()
    assert ei.value.code == CLAW_E_CONFIG_INVALID
    assert ei.value.details["name"] == "CLAW_MIN_TRUST_SCORE"
