import logging
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests
from litellm import completion as litellm_completion

from flowgate import config
from flowgate.models.workflow import ExecutionState, NodeResult, NodeType, WorkflowNode

# Set up logging
logger = logging.getLogger(__name__)

DEFAULT_AI_PROMPT = "Analyze the following data and provide insights."
RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again in a moment."
CREDITS_EXHAUSTED_MESSAGE = "AI credits exhausted. Please add credits to continue."

NodeHandler = Callable[[WorkflowNode, Any, ExecutionState], NodeResult]


def _summary(value: Any, limit: int = 100) -> str:
    text = str(value)
    return text[:limit] + ('...' if len(text) > limit else '')


def _error_result(message: str, error: Optional[str] = None, **extra: Any) -> NodeResult:
    return NodeResult(status="error", message=message, error=error or message, **extra)


def _parse_json_option(value: Any, node_id: str, option: str) -> Any:
    """Config values edited in the UI may arrive as JSON strings."""
    if isinstance(value, str) and value.strip():
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.warning(f"Node {node_id}: Invalid {option} JSON, using raw string.")
    return value


def _parse_response_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except requests.exceptions.JSONDecodeError:
        return response.text


def _loosely_equal(actual: Any, expected: Any) -> bool:
    # Values typed in the editor arrive as strings ("1" vs 1)
    if actual == expected:
        return True
    return actual is not None and expected is not None and str(actual) == str(expected)


# --- trigger ---

def execute_trigger_node(node: WorkflowNode, input_data: Any, state: ExecutionState) -> NodeResult:
    """Triggers always fire; configuration problems are the validator's concern."""
    data: Dict[str, Any] = dict(input_data) if isinstance(input_data, dict) else {}
    data["timestamp"] = datetime.now(timezone.utc).isoformat()
    data["triggerId"] = node.id
    logger.info(f"Trigger node {node.id} ({node.title}) activated by {state.context.triggered_by or 'manual'}.")
    return NodeResult(
        status="triggered",
        message=f'Trigger "{node.title}" activated',
        data=data,
    )


# --- condition ---

def _evaluate_condition(operator: str, actual: Any, expected: Any) -> bool:
    if operator == "equals":
        return _loosely_equal(actual, expected)
    if operator == "not_equals":
        return not _loosely_equal(actual, expected)
    if operator == "contains":
        if actual is None:
            return False
        if isinstance(actual, (list, tuple, dict)):
            return expected in actual
        return str(expected) in str(actual)
    if operator == "greater_than":
        return float(actual) > float(expected)
    if operator == "less_than":
        return float(actual) < float(expected)
    # Unknown operators never block the flow
    return True


def execute_condition_node(node: WorkflowNode, input_data: Any, state: ExecutionState) -> NodeResult:
    node_config = node.config
    field = node_config.get("field")
    operator = node_config.get("operator", "equals")
    expected = node_config.get("value")
    details = {"field": field, "operator": operator, "expected": expected}

    try:
        # Read from a named earlier node when asked to, otherwise from the previous step
        source_node = node_config.get("source_node")
        source_data = state.outputs.get(source_node) if source_node else input_data
        actual = source_data.get(field) if isinstance(source_data, dict) and field else None
        details["actual"] = actual
        condition_met = _evaluate_condition(operator, actual, expected)
    except Exception as e:
        logger.error(f"Condition node {node.id}: Comparison failed: {e}")
        return _error_result(f'Condition "{node.title}" could not be evaluated', str(e), details=details)

    details["conditionMet"] = condition_met
    logger.info(f"Condition node {node.id}: {field!r} {operator} {expected!r} -> {condition_met}")
    return NodeResult(
        status="passed" if condition_met else "failed",
        message=f'Condition "{node.title}" {"passed" if condition_met else "failed"}',
        data=input_data,
        details=details,
    )


# --- action ---

def _send_request(state: ExecutionState, **request_kwargs: Any) -> requests.Response:
    if state.context.cancel_event.is_set():
        raise RuntimeError("Execution cancelled before the request was sent")
    if state.abandon_event.is_set():
        raise RuntimeError("Node timed out before the request was sent")
    response = requests.request(timeout=state.context.node_timeout, **request_kwargs)
    response.raise_for_status()  # Raise HTTPError for bad responses (4xx or 5xx)
    return response


def _execute_email_action(node: WorkflowNode, input_data: Any, state: ExecutionState) -> NodeResult:
    recipient = node.config.get("to", "unspecified recipient")
    subject = node.config.get("subject", node.title)
    # No delivery: only the intent is recorded
    logger.info(f"Action node {node.id}: Simulated email to {recipient} with subject '{subject}'.")
    return NodeResult(
        status="completed",
        message=f'Email action "{node.title}" simulated',
        data={"simulated": True, "to": recipient, "subject": subject},
    )


def _execute_api_call_action(node: WorkflowNode, input_data: Any, state: ExecutionState) -> NodeResult:
    node_config = node.config
    url = node_config.get("url")
    if not url:
        return _error_result(f'API call "{node.title}" failed', "URL is required for API_CALL")

    http_method = str(node_config.get("http_method") or "GET").upper()
    headers = _parse_json_option(node_config.get("headers", {}), node.id, "headers")
    if not isinstance(headers, dict):
        headers = {}
    body = _parse_json_option(node_config.get("body"), node.id, "body")
    if body is None and http_method in ['POST', 'PUT', 'PATCH']:
        body = input_data  # Default to sending the upstream data

    request_kwargs: Dict[str, Any] = {"method": http_method, "url": url, "headers": headers}
    if http_method in ['POST', 'PUT', 'PATCH']:
        if isinstance(body, (dict, list)):
            request_kwargs["json"] = body
        elif body is not None:
            request_kwargs["data"] = body

    logger.info(f"Action node {node.id}: Sending {http_method} request to {url}")
    try:
        response = _send_request(state, **request_kwargs)
    except (requests.exceptions.RequestException, RuntimeError) as e:
        logger.error(f"Action node {node.id}: API call failed: {e}")
        return _error_result(f'API call "{node.title}" failed', str(e))

    response_data = _parse_response_body(response)
    logger.info(f"Action node {node.id}: Request successful (Status: {response.status_code})")
    return NodeResult(
        status="completed",
        message=f'API call "{node.title}" returned {response.status_code}',
        data={"statusCode": response.status_code, "body": response_data},
        details={"url": url, "method": http_method, "response_summary": _summary(response_data)},
    )


def _execute_webhook_action(node: WorkflowNode, input_data: Any, state: ExecutionState) -> NodeResult:
    url = node.config.get("url")
    if not url:
        return _error_result(f'Webhook "{node.title}" failed', "URL is required for WEBHOOK")

    headers = _parse_json_option(node.config.get("headers", {}), node.id, "headers")
    if not isinstance(headers, dict):
        headers = {}
    payload = state.trace.execution_data()

    logger.info(f"Action node {node.id}: Posting {len(payload['steps'])} steps to webhook {url}")
    try:
        response = _send_request(state, method="POST", url=url, json=payload, headers=headers)
    except (requests.exceptions.RequestException, RuntimeError) as e:
        logger.error(f"Action node {node.id}: Webhook delivery failed: {e}")
        return _error_result(f'Webhook "{node.title}" failed', f"Failed to send webhook to {url}: {e}")

    return NodeResult(
        status="completed",
        message=f'Webhook "{node.title}" delivered',
        data={"statusCode": response.status_code, "body": _parse_response_body(response)},
        details={"url": url, "steps_sent": len(payload["steps"])},
    )


def _execute_log_action(node: WorkflowNode, input_data: Any, state: ExecutionState) -> NodeResult:
    logger.info(f"Action node {node.id} ({node.title}) received: {_summary(input_data)}")
    return NodeResult(
        status="completed",
        message=f'Action "{node.title}" executed successfully',
        data=input_data,
        details={"logged_input_summary": _summary(input_data)},
    )


ACTION_METHODS: Dict[str, NodeHandler] = {
    "EMAIL": _execute_email_action,
    "API_CALL": _execute_api_call_action,
    "WEBHOOK": _execute_webhook_action,
    "LOG": _execute_log_action,
}


def execute_action_node(node: WorkflowNode, input_data: Any, state: ExecutionState) -> NodeResult:
    method = str(node.config.get("method") or "LOG").upper()
    handler = ACTION_METHODS.get(method)
    if handler is None:
        logger.warning(f"Action node {node.id}: Unknown method '{method}', falling back to LOG.")
        handler = _execute_log_action
    try:
        return handler(node, input_data, state)
    except Exception as e:
        logger.error(f"Action node {node.id}: {method} failed: {e}", exc_info=True)
        return _error_result(f'Action "{node.title}" failed', str(e))


# --- data ---

def _rename_keys(item: Any, mapping: Dict[str, str]) -> Any:
    if not isinstance(item, dict):
        return item
    return {mapping.get(key, key): value for key, value in item.items()}


def _transform(node_config: Dict[str, Any], input_data: Any) -> Any:
    mapping = node_config.get("mapping")
    if not isinstance(mapping, dict) or not mapping:
        return input_data
    if isinstance(input_data, list):
        return [_rename_keys(item, mapping) for item in input_data]
    return _rename_keys(input_data, mapping)


def _filter(node_config: Dict[str, Any], input_data: Any) -> Any:
    field = node_config.get("field")
    if not field or not isinstance(input_data, list):
        return input_data
    expected = node_config.get("value")
    return [item for item in input_data if isinstance(item, dict) and _loosely_equal(item.get(field), expected)]


def _aggregate(node_config: Dict[str, Any], input_data: Any) -> Any:
    if not isinstance(input_data, list):
        return input_data
    result: Dict[str, Any] = {"count": len(input_data)}
    field = node_config.get("field")
    if field:
        values = [item.get(field) for item in input_data if isinstance(item, dict)]
        result["sum"] = sum(v for v in values if isinstance(v, (int, float)) and not isinstance(v, bool))
    return result


DATA_OPERATIONS: Dict[str, Callable[[Dict[str, Any], Any], Any]] = {
    "transform": _transform,
    "filter": _filter,
    "aggregate": _aggregate,
}


def execute_data_node(node: WorkflowNode, input_data: Any, state: ExecutionState) -> NodeResult:
    """Reshape upstream data. Anything the operation can't apply to is echoed unchanged."""
    operation = node.config.get("operation") or "default"
    try:
        apply_operation = DATA_OPERATIONS.get(operation)
        output = apply_operation(node.config, input_data) if apply_operation else input_data
    except Exception as e:
        logger.error(f"Data node {node.id}: Operation '{operation}' failed: {e}", exc_info=True)
        return _error_result(f'Data operation "{node.title}" failed', str(e))

    logger.info(f"Data node {node.id}: Operation '{operation}' produced {_summary(output, 60)}")
    return NodeResult(
        status="completed",
        message=f'Data operation "{node.title}" completed',
        data=output,
        details={"operation": operation},
    )


# --- ai ---

def _usage_to_dict(response: Any) -> Optional[Dict[str, Any]]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return None
    if isinstance(usage, dict):
        return usage
    if hasattr(usage, "model_dump"):
        return usage.model_dump()
    if hasattr(usage, "dict"):
        return usage.dict()
    return None


def _extract_content(response: Any) -> Optional[str]:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return None
    message = getattr(choices[0], "message", None)
    return getattr(message, "content", None)


def execute_ai_node(node: WorkflowNode, input_data: Any, state: ExecutionState) -> NodeResult:
    node_config = node.config
    prompt = node_config.get("prompt") or DEFAULT_AI_PROMPT
    model = node_config.get("model") or config.AI_MODEL
    context_str = json.dumps(input_data, indent=2, default=str) if input_data is not None else "No previous data"

    messages = [
        {"role": "user", "content": f"{prompt}\n\nContext: {context_str}"}
    ]

    try:
        temperature = float(node_config.get("temperature", 0.7))
        max_tokens = int(node_config.get("max_tokens", 500))
    except (TypeError, ValueError) as e:
        return _error_result(f'AI processing "{node.title}" failed', f"Invalid model settings: {e}")

    if state.context.cancel_event.is_set() or state.abandon_event.is_set():
        return _error_result(f'AI processing "{node.title}" failed', "Node stopped before the model was called")

    logger.info(f"AI node {node.id}: Calling model '{model}' (Base: {config.AI_API_BASE or 'default'}). Temp: {temperature}, MaxTokens: {max_tokens}")
    try:
        response = litellm_completion(
            model=model,
            messages=messages,
            api_key=config.AI_API_KEY,
            api_base=config.AI_API_BASE,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=state.context.node_timeout,
        )
    except Exception as llm_exc:
        status_code = getattr(llm_exc, "status_code", None)
        if status_code == 429:
            error_msg = RATE_LIMIT_MESSAGE
        elif status_code == 402:
            error_msg = CREDITS_EXHAUSTED_MESSAGE
        else:
            error_msg = f"AI request failed: {llm_exc}"
        logger.error(f"AI node {node.id}: API call failed for model {model} (status {status_code}): {llm_exc}")
        return _error_result(f'AI processing "{node.title}" failed', error_msg)

    content = _extract_content(response)
    if not content:
        logger.error(f"AI node {node.id}: Empty response from model {model}.")
        return _error_result(f'AI processing "{node.title}" failed', "No response from AI")

    usage = _usage_to_dict(response)
    logger.info(f"AI node {node.id}: Call successful. Output length: {len(content)}, Usage: {usage}")
    return NodeResult(
        status="completed",
        message=f'AI processing "{node.title}" completed',
        data={"response": content, "model": model},
        usage=usage,
    )


# --- dispatch ---

def execute_generic_node(node: WorkflowNode, input_data: Any, state: ExecutionState) -> NodeResult:
    """Subtypes with no dedicated behavior pass their input through."""
    logger.info(f"Node {node.id}: No dedicated handler for type '{node.type}'. Passing input through.")
    return NodeResult(status="completed", message=f'Node "{node.title}" executed', data=input_data)


NODE_HANDLERS: Dict[NodeType, NodeHandler] = {
    NodeType.TRIGGER: execute_trigger_node,
    NodeType.CONDITION: execute_condition_node,
    NodeType.ACTION: execute_action_node,
    NodeType.DATA: execute_data_node,
    NodeType.AI: execute_ai_node,
}

_unhandled: List[str] = [t.value for t in NodeType if t not in NODE_HANDLERS]
if _unhandled:
    raise RuntimeError(f"No handler registered for node types: {_unhandled}")


def execute_node(node: WorkflowNode, input_data: Any, state: ExecutionState) -> NodeResult:
    """Executes a single node based on its type."""
    logger.info(f"Executing node {node.id} ({node.title} - {node.type}) with input: {_summary(input_data)}")
    node_type = node.node_type
    handler = NODE_HANDLERS[node_type] if node_type is not None else execute_generic_node
    return handler(node, input_data, state)
