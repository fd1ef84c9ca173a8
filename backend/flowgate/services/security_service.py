import json
import logging
from typing import List

from flowgate.models.admission import AdmissionDecision, SecurityIssue, SecurityScanResult, RISK_ORDER
from flowgate.models.workflow import WorkflowNode
from flowgate.services.rule_catalog import (
    SECURITY_RULES,
    COMPLEXITY_RULE,
    MAX_NETWORK_NODES,
    MAX_COMPLEXITY_NODES,
    get_security_rule,
)

# Set up logging
logger = logging.getLogger(__name__)

NETWORK_CALL_MARKERS = ("action_type", "service", "method")


def _node_content(node: WorkflowNode) -> str:
    """Flat text the pattern rules are matched against."""
    content = {"title": node.title, "config": node.config, "type": node.type}
    if node.description:
        content["description"] = node.description
    return json.dumps(content, separators=(",", ":"), default=str)


def _is_network_node(node: WorkflowNode) -> bool:
    if node.type != "action":
        return False
    for key in NETWORK_CALL_MARKERS:
        value = (node.config or {}).get(key)
        if isinstance(value, str) and value.lower() == "api_call":
            return True
    return "api" in node.title.lower()


def highest_risk(levels: List[str]) -> str:
    """Maximum severity among levels, 'safe' when there are none."""
    return max(levels, key=RISK_ORDER.index, default="safe")


def scan_workflow_security(nodes: List[WorkflowNode]) -> SecurityScanResult:
    """Match every node against the security rule catalog and rate the workflow."""
    issues: List[SecurityIssue] = []

    for node in nodes:
        node_content = _node_content(node)
        for rule in SECURITY_RULES:
            if rule.pattern is None or not rule.pattern.search(node_content):
                continue
            issues.append(SecurityIssue(
                rule_name=rule.name,
                rule_type=rule.rule_type,
                risk_level=rule.risk,
                description=rule.description,
                remediation=rule.remediation,
                location=f"Node: {node.title} ({node.type})",
                matched_pattern=rule.pattern.pattern,
            ))
            logger.debug(f"Node {node.id}: matched security rule '{rule.name}' ({rule.risk}).")

    network_nodes = [n for n in nodes if _is_network_node(n)]
    if len(network_nodes) > MAX_NETWORK_NODES:
        rule = get_security_rule("excessive-network-calls")
        issues.append(SecurityIssue(
            rule_name=rule.name,
            rule_type=rule.rule_type,
            risk_level=rule.risk,
            description=f"{len(network_nodes)} network nodes detected (max recommended: {MAX_NETWORK_NODES})",
            remediation=rule.remediation,
            location="Workflow structure",
        ))

    if len(nodes) > MAX_COMPLEXITY_NODES:
        issues.append(SecurityIssue(
            rule_name=COMPLEXITY_RULE.name,
            rule_type=COMPLEXITY_RULE.rule_type,
            risk_level=COMPLEXITY_RULE.risk,
            description=f"Workflow has {len(nodes)} nodes (max recommended: {MAX_COMPLEXITY_NODES})",
            remediation=COMPLEXITY_RULE.remediation,
            location="Workflow structure",
        ))

    overall_risk = highest_risk([issue.risk_level for issue in issues])
    logger.info(f"Security scan of {len(nodes)} nodes: {len(issues)} issues, risk level '{overall_risk}'")
    return SecurityScanResult(
        risk_level=overall_risk,
        issues=issues,
        passed=overall_risk not in ("high", "critical"),
    )


def validate_workflow_security(nodes: List[WorkflowNode], require_approval: bool = False) -> AdmissionDecision:
    """Admission gate: decide whether a workflow may execute given its scan result."""
    scan_result = scan_workflow_security(nodes)

    # Critical risks are always blocked
    if scan_result.risk_level == "critical":
        return AdmissionDecision(
            valid=False,
            outcome="blocked",
            reason="Workflow contains critical security risks and cannot be executed",
            scanResult=scan_result,
        )

    if scan_result.risk_level == "high" and require_approval:
        return AdmissionDecision(
            valid=False,
            outcome="needs-approval",
            reason="Workflow contains high security risks and requires admin approval",
            scanResult=scan_result,
        )

    return AdmissionDecision(valid=True, outcome="allowed", scanResult=scan_result)
