import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from flowgate.models.workflow import ExecutionRequest
from flowgate.services.workflow_service import (
    WorkflowExecutionError,
    admit_workflow,
    build_execution_response,
    execute_workflow,
)

# Set up logging
logger = logging.getLogger(__name__)


class SuiteAssertion(BaseModel):
    type: str = "output"
    field: str
    operator: str
    expected: Optional[Any] = None


class SuiteCase(BaseModel):
    name: str
    input: Optional[Dict[str, Any]] = None
    assertions: List[SuiteAssertion] = Field(default_factory=list)


class SuiteRunRequest(ExecutionRequest):
    testCases: List[SuiteCase] = Field(default_factory=list)


# Marks a field path that resolves to nothing, as opposed to a null value
_MISSING = object()


def _resolve_path(value: Any, path: str) -> Any:
    """Walk a dotted path through dicts and lists ("steps.0.result.status")."""
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        elif isinstance(value, list) and key.isdigit() and int(key) < len(value):
            value = value[int(key)]
        else:
            return _MISSING
    return value


def _resolve_field(field: str, execution_output: Dict[str, Any], test_input: Any) -> Any:
    if field.startswith("output."):
        return _resolve_path(execution_output.get("result"), field[len("output."):])
    if field.startswith("input."):
        return _resolve_path(test_input, field[len("input."):])
    if field == "status":
        return "success" if execution_output.get("success") else "failed"
    if field == "duration_ms":
        return execution_output.get("duration_ms", _MISSING)
    return _MISSING


def _type_name(value: Any) -> str:
    """Type names as a JavaScript-authored assertion expects them (null is "object")."""
    if value is _MISSING:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def _compare_numbers(actual: Any, expected: Any, greater: bool) -> bool:
    try:
        if greater:
            return float(actual) > float(expected)
        return float(actual) < float(expected)
    except (TypeError, ValueError):
        return False


def evaluate_assertion(assertion: SuiteAssertion, execution_output: Dict[str, Any], test_input: Any) -> Dict[str, Any]:
    field, operator, expected = assertion.field, assertion.operator, assertion.expected
    resolved = _resolve_field(field, execution_output, test_input)
    actual = None if resolved is _MISSING else resolved

    if operator == "equals":
        passed = actual == expected
        message = f"✓ {field} equals {expected}" if passed else f"✗ {field} expected {expected}, got {actual}"
    elif operator == "not_equals":
        passed = actual != expected
        message = f"✓ {field} does not equal {expected}" if passed else f"✗ {field} should not equal {expected}"
    elif operator == "contains":
        passed = str(expected) in str(actual)
        message = f'✓ {field} contains "{expected}"' if passed else f'✗ {field} does not contain "{expected}"'
    elif operator == "greater_than":
        passed = _compare_numbers(actual, expected, greater=True)
        message = f"✓ {field} ({actual}) > {expected}" if passed else f"✗ {field} ({actual}) is not > {expected}"
    elif operator == "less_than":
        passed = _compare_numbers(actual, expected, greater=False)
        message = f"✓ {field} ({actual}) < {expected}" if passed else f"✗ {field} ({actual}) is not < {expected}"
    elif operator == "exists":
        passed = actual is not None
        message = f"✓ {field} exists" if passed else f"✗ {field} does not exist"
    elif operator == "type":
        actual_type = _type_name(resolved)
        passed = actual_type == expected
        message = f"✓ {field} is {expected}" if passed else f"✗ {field} expected type {expected}, got {actual_type}"
    else:
        passed = False
        message = f"✗ Unknown operator: {operator}"

    return {
        "type": assertion.type,
        "field": field,
        "operator": operator,
        "expected": expected,
        "actual": actual,
        "passed": passed,
        "message": message,
    }


async def run_test_case(request: SuiteRunRequest, test_case: SuiteCase, nodes) -> Dict[str, Any]:
    logger.info(f"Running test: {test_case.name}")
    result: Dict[str, Any] = {
        "test_name": test_case.name,
        "status": "running",
        "started_at": datetime.now(timezone.utc).isoformat(),
        "completed_at": None,
        "duration_ms": 0,
        "assertions": [],
        "error": None,
    }
    start_time = time.monotonic()

    context = request.to_context()
    context.trigger_data = test_case.input or {}
    try:
        trace = await execute_workflow(nodes, context)
    except WorkflowExecutionError as e:
        result["status"] = "failed"
        result["error"] = str(e)
    else:
        execution_output = build_execution_response(trace)
        result["assertions"] = [
            evaluate_assertion(assertion, execution_output, test_case.input)
            for assertion in test_case.assertions
        ]
        result["status"] = "passed" if all(a["passed"] for a in result["assertions"]) else "failed"

    result["duration_ms"] = int((time.monotonic() - start_time) * 1000)
    result["completed_at"] = datetime.now(timezone.utc).isoformat()
    return result


async def run_test_suite(request: SuiteRunRequest) -> Dict[str, Any]:
    """Execute the workflow once per test case and evaluate each case's assertions."""
    nodes = admit_workflow(request, request.to_context())

    results = []
    for test_case in request.testCases:
        results.append(await run_test_case(request, test_case, nodes))

    passed_count = sum(1 for r in results if r["status"] == "passed")
    failed_count = len(results) - passed_count
    overall_status = "passed" if failed_count == 0 else ("partial" if passed_count > 0 else "failed")
    logger.info(f"Test suite finished: {passed_count} passed, {failed_count} failed ({overall_status})")

    return {
        "success": True,
        "overall_status": overall_status,
        "passed": passed_count,
        "failed": failed_count,
        "total": len(results),
        "results": results,
    }
