"""Risk classification and allow/deny decisions for tool calls."""

import json
import logging
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class ToolRisk(StrEnum):
    READ_ONLY = "read_only"
    NETWORK_READ = "network_read"
    DATA_EXFILTRATION = "data_exfiltration_risk"
    EXTERNAL_WRITE = "external_write"
    HIGH_RISK = "high_risk"


# Risks that are side-effect free: eligible for parallel execution and caching.
READ_ONLY_RISKS = frozenset({ToolRisk.READ_ONLY, ToolRisk.NETWORK_READ})

DEFAULT_TOOL_RISK: dict[str, ToolRisk] = {
    "get_current_datetime": ToolRisk.READ_ONLY,
    "web_search": ToolRisk.NETWORK_READ,
}


@dataclass(frozen=True, slots=True)
class ToolPolicyConfig:
    allow_network_read: bool = True
    allow_data_exfiltration_risk: bool = True
    allow_external_write: bool = False
    allow_high_risk: bool = False
    blocked_tools: frozenset[str] = frozenset()
    risk_overrides: Mapping[str, ToolRisk] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolPolicyDecision:
    tool: str
    allow: bool
    risk: ToolRisk
    code: str
    reason: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "allow": self.allow,
            "risk": str(self.risk),
            "code": self.code,
            "reason": self.reason,
        }


def resolve_tool_risk(
    name: str,
    config: ToolPolicyConfig | None = None,
    declared_risk: ToolRisk | None = None,
) -> tuple[ToolRisk, bool]:
    """Return ``(risk, is_fallback)``: override, then declared, then builtin default."""
    if config is not None and name in config.risk_overrides:
        return config.risk_overrides[name], False
    if declared_risk is not None:
        return declared_risk, False
    if name in DEFAULT_TOOL_RISK:
        return DEFAULT_TOOL_RISK[name], False
    return ToolRisk.HIGH_RISK, True


def is_read_only(risk: ToolRisk) -> bool:
    return risk in READ_ONLY_RISKS


def evaluate_tool_policy(
    name: str,
    config: ToolPolicyConfig | None = None,
    *,
    declared_risk: ToolRisk | None = None,
    known_tools: Collection[str] | None = None,
) -> ToolPolicyDecision:
    risk, fallback = resolve_tool_risk(name, config, declared_risk)

    def deny(code: str, reason: str) -> ToolPolicyDecision:
        return ToolPolicyDecision(tool=name, allow=False, risk=risk, code=code, reason=reason)

    if known_tools is not None and name not in known_tools:
        allowed = ", ".join(sorted(known_tools)) or "none"
        return deny("unknown_tool", f'Unknown tool: "{name}". Allowed tools: {allowed}')
    if config is None:
        return ToolPolicyDecision(
            tool=name, allow=True, risk=risk, code="allow_unconfigured", reason="no policy configured"
        )
    if fallback and not config.allow_high_risk:
        return deny("unclassified_tool_high_risk", f'Tool "{name}" has no risk classification')
    if name in config.blocked_tools:
        return deny("blocked_tool", f'Tool "{name}" is blocked by policy')
    if risk is ToolRisk.HIGH_RISK and not config.allow_high_risk:
        return deny("high_risk_disabled", f'High-risk tool "{name}" is disabled')
    if risk is ToolRisk.EXTERNAL_WRITE and not config.allow_external_write:
        return deny("external_write_disabled", f'Tool "{name}" writes externally and is disabled')
    if risk is ToolRisk.DATA_EXFILTRATION and not config.allow_data_exfiltration_risk:
        return deny(
            "data_exfiltration_disabled", f'Tool "{name}" can expose private data and is disabled'
        )
    if risk is ToolRisk.NETWORK_READ and not config.allow_network_read:
        return deny("network_read_disabled", f'Network tool "{name}" is disabled')
    return ToolPolicyDecision(tool=name, allow=True, risk=risk, code="allowed", reason="allowed")


def merge_tool_policy_config(
    base: ToolPolicyConfig, override: Mapping[str, Any] | None
) -> ToolPolicyConfig:
    if not override:
        return base
    merged = base
    for key in (
        "allow_network_read",
        "allow_data_exfiltration_risk",
        "allow_external_write",
        "allow_high_risk",
    ):
        if isinstance(override.get(key), bool):
            merged = replace(merged, **{key: override[key]})
    blocked = override.get("blocked_tools")
    if isinstance(blocked, (list, tuple, set, frozenset)):
        merged = replace(
            merged,
            blocked_tools=merged.blocked_tools
            | frozenset(str(item).strip() for item in blocked if str(item).strip()),
        )
    risk_overrides = override.get("risk_overrides")
    if isinstance(risk_overrides, Mapping):
        combined = dict(merged.risk_overrides)
        for tool, risk in risk_overrides.items():
            try:
                combined[str(tool)] = ToolRisk(str(risk))
            except ValueError:
                logger.warning("ignoring unknown risk class %r for tool %s", risk, tool)
        merged = replace(merged, risk_overrides=combined)
    return merged


# Applied when operator policy JSON cannot be parsed: only local read-only tools stay on.
FAIL_CLOSED_POLICY = ToolPolicyConfig(
    allow_network_read=False,
    allow_data_exfiltration_risk=False,
    allow_external_write=False,
    allow_high_risk=False,
)


def parse_tool_policy_json(raw: str, base: ToolPolicyConfig | None = None) -> ToolPolicyConfig:
    base = base or ToolPolicyConfig()
    if not raw.strip():
        return base
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("invalid tool policy JSON; failing closed: %s", exc)
        return FAIL_CLOSED_POLICY
    if not isinstance(payload, dict):
        logger.warning("tool policy JSON must be an object; failing closed")
        return FAIL_CLOSED_POLICY
    scoped = payload.get("default")
    return merge_tool_policy_config(base, scoped if isinstance(scoped, dict) else payload)


def parse_tool_blocklist_csv(raw: str) -> frozenset[str]:
    return frozenset(item.strip() for item in raw.split(",") if item.strip())
