from claw_gateway.errors import CLAW_E_IDENTITY_EXISTS, CLAW_E_POLICY_INVALID, governance_error


def test_error_envelope_carries_details():
    err = governance_error(CLAW_E_IDENTITY_EXISTS, "Identity already exists for agent: a", http_status=409, agent_id="a")
    assert str(err) == "CLAW_E_IDENTITY_EXISTS: Identity already exists for agent: a"
    assert err.as_dict() == {
        "code": CLAW_E_IDENTITY_EXISTS,
        "message": "Identity already exists for agent: a",
        "retryable": False,
        "http_status": 409,
        "details": {"agent_id": "a"},
    }


def test_error_envelope_omits_empty_details():
    err = governance_error(CLAW_E_POLICY_INVALID, "bad policy")
    assert "details" not in err.as_dict()
    assert err.http_status == 400
