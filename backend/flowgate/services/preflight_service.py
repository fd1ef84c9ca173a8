import logging
from typing import Iterable, List, Optional, Set

from flowgate.models.admission import NodeValidation, Requirement, ValidationResult
from flowgate.models.workflow import WorkflowNode
from flowgate.services.rule_catalog import REQUIREMENT_RULES, ERROR_FIX_RULES, GENERIC_ERROR_FIXES

# Set up logging
logger = logging.getLogger(__name__)


def check_node_requirements(node: WorkflowNode, credentials_on_file: Optional[Set[str]] = None) -> NodeValidation:
    """Apply the first matching requirement rule for the node's type."""
    validation = NodeValidation(nodeId=node.id, nodeTitle=node.title, nodeType=node.type)
    node_config = node.config or {}
    credentials_on_file = credentials_on_file or set()

    for rule in REQUIREMENT_RULES:
        if rule.node_type != node.type or not rule.applies(node_config):
            continue

        if rule.credential and rule.credential in credentials_on_file:
            validation.requirements.append(Requirement(
                name=rule.requirement,
                status="configured",
                actionLabel=rule.action_label,
                actionType=rule.action_type,
            ))
            logger.debug(f"Node {node.id}: '{rule.requirement}' satisfied by stored credential '{rule.credential}'.")
        else:
            validation.requirements.append(Requirement(
                name=rule.requirement,
                status="missing",
                actionLabel=rule.action_label,
                actionType=rule.action_type,
            ))
            validation.status = rule.status
            validation.message = rule.message
            validation.suggestedFixes = generate_error_fixes(rule.message, node.type)
        break

    return validation


def validate_workflow(nodes: List[WorkflowNode], available_credentials: Optional[Iterable[str]] = None) -> ValidationResult:
    """
    Pre-flight check of every node before a workflow may run.

    An empty workflow is never valid. Errors always block; a workflow with
    warnings but no errors may be run anyway on explicit request.
    """
    if not nodes:
        return ValidationResult(isValid=False, canRunAnyway=False, validations=[])

    credentials_on_file = set(available_credentials or [])
    validations = [check_node_requirements(node, credentials_on_file) for node in nodes]

    has_errors = any(v.status == "error" for v in validations)
    has_warnings = any(v.status == "warning" for v in validations)

    logger.info(f"Validated {len(nodes)} nodes: errors={has_errors}, warnings={has_warnings}")
    return ValidationResult(
        isValid=not has_errors,
        canRunAnyway=not has_errors and has_warnings,
        validations=validations,
    )


def generate_error_fixes(error: str, node_type: str) -> List[str]:
    """Canned remediation hints for a runtime error message."""
    fixes: List[str] = []
    for triggers, advice in ERROR_FIX_RULES:
        if any(trigger in error for trigger in triggers):
            fixes.extend(advice)

    if not fixes:
        fixes.extend(GENERIC_ERROR_FIXES)
    return fixes
