from types import SimpleNamespace
from unittest.mock import patch, MagicMock

import requests

from flowgate.models.workflow import ExecutionContext, ExecutionState, ExecutionTrace, NodeType, TraceStep, WorkflowNode
from flowgate.services.node_execution import (
    NODE_HANDLERS,
    RATE_LIMIT_MESSAGE,
    CREDITS_EXHAUSTED_MESSAGE,
    execute_node,
)


class FakeLLMError(Exception):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


def make_state(**context_kwargs) -> ExecutionState:
    context = ExecutionContext(workspace_id="ws-1", **context_kwargs)
    return ExecutionState(context=context, trace=ExecutionTrace())


def make_node(node_type: str, title: str = "Step", node_id: str = "n1", **config) -> WorkflowNode:
    return WorkflowNode(id=node_id, type=node_type, title=title, config=config)


def make_response(status_code: int = 200, body=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {}
    response.raise_for_status.return_value = None
    return response


def make_llm_response(content, usage=None):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=usage,
    )


def test_every_node_type_has_a_handler():
    assert set(NODE_HANDLERS) == set(NodeType)


def test_trigger_always_fires():
    result = execute_node(make_node("trigger", title="Start", node_id="t1"), {"order": 7}, make_state())
    assert result.status == "triggered"
    assert result.data["triggerId"] == "t1"
    assert result.data["order"] == 7
    assert "timestamp" in result.data


def test_condition_equals_passes_and_threads_input():
    node = make_node("condition", field="x", operator="equals", value=1)
    result = execute_node(node, {"x": 1}, make_state())
    assert result.status == "passed"
    assert result.data == {"x": 1}
    assert result.details["actual"] == 1
    assert result.details["expected"] == 1
    assert result.details["conditionMet"] is True


def test_condition_operators():
    state = make_state()
    cases = [
        ("equals", "1", {"x": 1}, "passed"),
        ("not_equals", 2, {"x": 1}, "passed"),
        ("not_equals", 1, {"x": 1}, "failed"),
        ("contains", "lo", {"x": "hello"}, "passed"),
        ("contains", "z", {"x": "hello"}, "failed"),
        ("greater_than", 3, {"x": 5}, "passed"),
        ("less_than", 3, {"x": 5}, "failed"),
        ("regex", "anything", {"x": 5}, "passed"),
    ]
    for operator, value, data, expected in cases:
        node = make_node("condition", field="x", operator=operator, value=value)
        assert execute_node(node, data, state).status == expected, operator


def test_condition_comparison_error_is_reported_not_raised():
    node = make_node("condition", field="x", operator="greater_than", value=3)
    result = execute_node(node, {"x": "not a number"}, make_state())
    assert result.status == "error"
    assert result.error


def test_condition_missing_upstream_data_fails():
    node = make_node("condition", field="x", operator="equals", value=1)
    assert execute_node(node, None, make_state()).status == "failed"


def test_condition_can_read_a_named_earlier_node():
    state = make_state()
    state.outputs["t1"] = {"plan": "pro"}
    node = make_node("condition", field="plan", operator="equals", value="pro", source_node="t1")
    assert execute_node(node, {"plan": "free"}, state).status == "passed"


def test_log_action_is_the_default_and_passes_data():
    for config in ({"method": "LOG"}, {}, {"method": "SOMETHING_ELSE"}):
        result = execute_node(make_node("action", **config), {"a": 1}, make_state())
        assert result.status == "completed"
        assert result.data == {"a": 1}


def test_email_action_is_simulated():
    with patch('flowgate.services.node_execution.requests.request') as mock_request:
        result = execute_node(make_node("action", method="EMAIL", to="ops@example.com", subject="Hi"), {}, make_state())
    assert result.status == "completed"
    assert result.data == {"simulated": True, "to": "ops@example.com", "subject": "Hi"}
    mock_request.assert_not_called()


@patch('flowgate.services.node_execution.requests.request')
def test_api_call_action(mock_request):
    mock_request.return_value = make_response(201, {"id": 42})
    node = make_node("action", method="API_CALL", url="https://api.example.com/items",
                     http_method="post", headers='{"X-Team": "ops"}', body={"name": "n"})

    result = execute_node(node, {"ignored": True}, make_state(node_timeout=5))

    assert result.status == "completed"
    assert result.data == {"statusCode": 201, "body": {"id": 42}}
    mock_request.assert_called_once_with(
        timeout=5,
        method="POST",
        url="https://api.example.com/items",
        headers={"X-Team": "ops"},
        json={"name": "n"},
    )


@patch('flowgate.services.node_execution.requests.request')
def test_api_call_sends_upstream_data_when_no_body(mock_request):
    mock_request.return_value = make_response(200, {"ok": True})
    node = make_node("action", method="API_CALL", url="https://api.example.com/items", http_method="PUT")
    execute_node(node, {"x": 1}, make_state())
    assert mock_request.call_args.kwargs["json"] == {"x": 1}


@patch('flowgate.services.node_execution.requests.request')
def test_api_call_failure_becomes_error_result(mock_request):
    mock_request.side_effect = requests.exceptions.ConnectionError("connection refused")
    result = execute_node(make_node("action", method="API_CALL", url="https://api.example.com"), None, make_state())
    assert result.status == "error"
    assert "connection refused" in result.error


def test_api_call_without_url_is_an_error():
    result = execute_node(make_node("action", method="API_CALL"), None, make_state())
    assert result.status == "error"
    assert result.error == "URL is required for API_CALL"


@patch('flowgate.services.node_execution.requests.request')
def test_api_call_not_sent_after_cancellation(mock_request):
    state = make_state()
    state.context.cancel_event.set()
    result = execute_node(make_node("action", method="API_CALL", url="https://api.example.com"), None, state)
    assert result.status == "error"
    mock_request.assert_not_called()


@patch('flowgate.services.node_execution.requests.request')
def test_webhook_posts_accumulated_execution_data(mock_request):
    mock_request.return_value = make_response(200, {"received": True})
    state = make_state()
    first = execute_node(make_node("trigger", title="Start", node_id="t1"), None, state)
    state.trace.steps.append(
        TraceStep(
            nodeId="t1", nodeType="trigger", nodeTitle="Start", result=first, timestamp="2024-01-01T00:00:00+00:00",
        )
    )

    result = execute_node(make_node("action", method="WEBHOOK", url="https://hooks.example.com/in", node_id="w1"), None, state)

    assert result.status == "completed"
    sent = mock_request.call_args.kwargs
    assert sent["method"] == "POST"
    assert sent["url"] == "https://hooks.example.com/in"
    assert [step["nodeId"] for step in sent["json"]["steps"]] == ["t1"]


def test_data_node_operations():
    state = make_state()
    rows = [{"kind": "a", "n": 2}, {"kind": "b", "n": 3}, {"kind": "a", "n": 5}]

    filtered = execute_node(make_node("data", operation="filter", field="kind", value="a"), rows, state)
    assert filtered.data == [{"kind": "a", "n": 2}, {"kind": "a", "n": 5}]

    aggregated = execute_node(make_node("data", operation="aggregate", field="n"), rows, state)
    assert aggregated.data == {"count": 3, "sum": 10}

    transformed = execute_node(make_node("data", operation="transform", mapping={"kind": "type"}), {"kind": "a"}, state)
    assert transformed.data == {"type": "a"}


def test_data_node_echoes_input_without_applicable_config():
    state = make_state()
    for config in ({}, {"operation": "transform"}, {"operation": "filter"}, {"operation": "aggregate"}):
        result = execute_node(make_node("data", **config), {"a": 1}, state)
        assert result.status == "completed"
        assert result.data == {"a": 1}


@patch('flowgate.services.node_execution.litellm_completion')
def test_ai_node_success_passes_usage_through(mock_completion):
    mock_completion.return_value = make_llm_response("Looks fine", usage={"total_tokens": 12})
    node = make_node("ai", prompt="Summarize this", model="gpt-test")

    result = execute_node(node, {"x": 1}, make_state(node_timeout=7))

    assert result.status == "completed"
    assert result.data == {"response": "Looks fine", "model": "gpt-test"}
    assert result.usage == {"total_tokens": 12}
    kwargs = mock_completion.call_args.kwargs
    assert kwargs["model"] == "gpt-test"
    assert kwargs["timeout"] == 7
    content = kwargs["messages"][0]["content"]
    assert content.startswith("Summarize this")
    assert '"x": 1' in content


@patch('flowgate.services.node_execution.litellm_completion')
def test_ai_node_uses_default_prompt(mock_completion):
    mock_completion.return_value = make_llm_response("ok")
    execute_node(make_node("ai"), None, make_state())
    content = mock_completion.call_args.kwargs["messages"][0]["content"]
    assert content.startswith("Analyze the following data and provide insights.")


@patch('flowgate.services.node_execution.litellm_completion')
def test_ai_node_maps_rate_limit_and_credits(mock_completion):
    mock_completion.side_effect = FakeLLMError("Too many requests", 429)
    assert execute_node(make_node("ai", prompt="p"), None, make_state()).error == RATE_LIMIT_MESSAGE

    mock_completion.side_effect = FakeLLMError("Payment required", 402)
    assert execute_node(make_node("ai", prompt="p"), None, make_state()).error == CREDITS_EXHAUSTED_MESSAGE

    mock_completion.side_effect = FakeLLMError("Server exploded", 500)
    result = execute_node(make_node("ai", prompt="p"), None, make_state())
    assert result.status == "error"
    assert "Server exploded" in result.error


@patch('flowgate.services.node_execution.litellm_completion')
def test_ai_node_empty_content_is_an_error(mock_completion):
    mock_completion.return_value = make_llm_response(None)
    result = execute_node(make_node("ai", prompt="p"), None, make_state())
    assert result.status == "error"
    assert result.error == "No response from AI"


def test_unknown_node_type_passes_input_through():
    result = execute_node(make_node("video_generator"), {"a": 1}, make_state())
    assert result.status == "completed"
    assert result.data == {"a": 1}


def test_condition_with_unusable_field_is_an_error():
    result = execute_node(make_node("condition", field=["x"], operator="equals", value=1), {"x": 1}, make_state())
    assert result.status == "error"
    assert "unhashable" in result.error


def test_condition_with_unusable_source_node_is_an_error():
    node = make_node("condition", field="x", operator="equals", value=1, source_node=["t1"])
    assert execute_node(node, {"x": 1}, make_state()).status == "error"


def test_data_node_with_unusable_operation_is_an_error():
    result = execute_node(make_node("data", operation=["filter"]), [{"a": 1}], make_state())
    assert result.status == "error"
    assert "unhashable" in result.error


@patch('flowgate.services.node_execution.requests.request')
def test_abandoned_node_sends_no_request(mock_request):
    state = make_state()
    state.abandon_event.set()
    for method in ("API_CALL", "WEBHOOK"):
        result = execute_node(make_node("action", method=method, url="https://api.example.com"), None, state)
        assert result.status == "error"
        assert "Node timed out before the request was sent" in result.error
    mock_request.assert_not_called()


@patch('flowgate.services.node_execution.litellm_completion')
def test_abandoned_ai_node_does_not_call_the_model(mock_completion):
    state = make_state()
    state.abandon_event.set()
    result = execute_node(make_node("ai", prompt="p"), None, state)
    assert result.status == "error"
    mock_completion.assert_not_called()
