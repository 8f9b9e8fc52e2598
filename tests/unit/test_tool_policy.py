from sage.tools.builtin.defaults import build_default_registry
from sage.tools.policy import (
    DEFAULT_TOOL_RISK,
    FAIL_CLOSED_POLICY,
    ToolPolicyConfig,
    ToolRisk,
    evaluate_tool_policy,
    is_read_only,
    merge_tool_policy_config,
    parse_tool_blocklist_csv,
    parse_tool_policy_json,
    resolve_tool_risk,
)


def test_risk_resolution_order() -> None:
    config = ToolPolicyConfig(risk_overrides={"web_search": ToolRisk.HIGH_RISK})
    assert resolve_tool_risk("web_search", config) == (ToolRisk.HIGH_RISK, False)
    assert resolve_tool_risk("custom", None, ToolRisk.READ_ONLY) == (ToolRisk.READ_ONLY, False)
    assert resolve_tool_risk("web_search") == (ToolRisk.NETWORK_READ, False)
    assert resolve_tool_risk("mystery") == (ToolRisk.HIGH_RISK, True)
    assert is_read_only(ToolRisk.NETWORK_READ)
    assert not is_read_only(ToolRisk.EXTERNAL_WRITE)


def test_unknown_tool_is_denied_first() -> None:
    decision = evaluate_tool_policy("nope", ToolPolicyConfig(), known_tools={"web_search"})
    assert decision.allow is False
    assert decision.code == "unknown_tool"
    assert "Allowed tools: web_search" in decision.reason


def test_default_policy_decisions() -> None:
    config = ToolPolicyConfig()
    assert evaluate_tool_policy("web_search", config).allow
    exfil = ToolRisk.DATA_EXFILTRATION
    assert evaluate_tool_policy("file_lookup", config, declared_risk=exfil).allow
    writer = evaluate_tool_policy("post_message", config, declared_risk=ToolRisk.EXTERNAL_WRITE)
    assert writer.code == "external_write_disabled"
    assert evaluate_tool_policy("mystery", config).code == "unclassified_tool_high_risk"
    assert evaluate_tool_policy("mystery", None).code == "allow_unconfigured"


def test_blocklist_and_flags_deny() -> None:
    config = ToolPolicyConfig(blocked_tools=frozenset({"web_search"}))
    assert evaluate_tool_policy("web_search", config).code == "blocked_tool"
    closed = ToolPolicyConfig(allow_network_read=False, allow_data_exfiltration_risk=False)
    assert evaluate_tool_policy("web_search", closed).code == "network_read_disabled"
    exfil = evaluate_tool_policy("file_lookup", closed, declared_risk=ToolRisk.DATA_EXFILTRATION)
    assert exfil.code == "data_exfiltration_disabled"
    assert evaluate_tool_policy("get_current_datetime", closed).allow


def test_declared_high_risk_needs_opt_in() -> None:
    denied = evaluate_tool_policy("rm", ToolPolicyConfig(), declared_risk=ToolRisk.HIGH_RISK)
    assert denied.code == "high_risk_disabled"
    allowed = evaluate_tool_policy(
        "rm", ToolPolicyConfig(allow_high_risk=True), declared_risk=ToolRisk.HIGH_RISK
    )
    assert allowed.allow
    assert allowed.as_dict()["risk"] == "high_risk"


def test_merge_and_parse_policy_json() -> None:
    merged = merge_tool_policy_config(
        ToolPolicyConfig(),
        {
            "allow_external_write": True,
            "allow_network_read": "yes",
            "blocked_tools": ["a", " ", "b"],
            "risk_overrides": {"x": "read_only", "y": "nonsense"},
        },
    )
    assert merged.allow_external_write is True
    assert merged.allow_network_read is True
    assert merged.blocked_tools == frozenset({"a", "b"})
    assert merged.risk_overrides == {"x": ToolRisk.READ_ONLY}

    nested = parse_tool_policy_json('{"default": {"allow_high_risk": true}}')
    assert nested.allow_high_risk is True
    assert parse_tool_policy_json("") == ToolPolicyConfig()


def test_invalid_policy_json_fails_closed() -> None:
    assert parse_tool_policy_json("{not json") == FAIL_CLOSED_POLICY
    assert parse_tool_policy_json("[1]") == FAIL_CLOSED_POLICY
    assert evaluate_tool_policy("web_search", FAIL_CLOSED_POLICY).allow is False


def test_blocklist_csv() -> None:
    assert parse_tool_blocklist_csv(" web_search, ,wiki ") == frozenset({"web_search", "wiki"})


def test_builtin_risk_table_matches_registered_tools() -> None:
    registry = build_default_registry()
    assert set(DEFAULT_TOOL_RISK) == set(registry.names())
    for name in registry.names():
        assert resolve_tool_risk(name) == (DEFAULT_TOOL_RISK[name], False)
