import pytest

from flowgate.models.workflow import WorkflowNode
from flowgate.services.preflight_service import validate_workflow, generate_error_fixes, check_node_requirements


def make_node(node_id: str, node_type: str, title: str = "Step", **config) -> WorkflowNode:
    return WorkflowNode(id=node_id, type=node_type, title=title, config=config)


def test_empty_workflow_is_never_valid():
    result = validate_workflow([])
    assert result.isValid is False
    assert result.canRunAnyway is False
    assert result.validations == []


def test_webhook_action_without_url_is_an_error():
    result = validate_workflow([make_node("n1", "action", service="webhook", url="")])

    assert result.isValid is False
    assert result.canRunAnyway is False
    assert len(result.validations) == 1
    validation = result.validations[0]
    assert validation.status == "error"
    assert validation.message == "Webhook URL not configured"
    assert [r.name for r in validation.requirements] == ["Webhook URL"]
    assert validation.requirements[0].status == "missing"
    assert validation.requirements[0].actionType == "config"


def test_webhook_action_with_url_is_valid():
    result = validate_workflow([make_node("n1", "action", service="webhook", url="https://hooks.example.com/x")])
    assert result.isValid is True
    assert result.validations[0].status == "valid"
    assert result.validations[0].requirements == []


@pytest.mark.parametrize("node_type, config, expected_status, expected_requirement", [
    ("trigger", {"event_source": "computer_activity_monitor"}, "error", "RescueTime API key"),
    ("trigger", {"event_source": "sms_inbound"}, "error", "Twilio account + phone number"),
    ("trigger", {"event_source": "schedule"}, "valid", None),
    ("action", {"service": "sms_provider"}, "error", "Twilio credentials"),
    ("action", {"service": "email"}, "error", "Email service"),
    ("action", {"service": "notification_provider"}, "warning", "Push notification permissions"),
    ("action", {"service": "log"}, "valid", None),
    ("action", {}, "valid", None),
    ("condition", {"field": "x"}, "valid", None),
    ("data", {"operation": "filter"}, "valid", None),
    ("ai", {}, "warning", "AI prompt"),
    ("ai", {"prompt": "Summarize"}, "valid", None),
    ("image_generator", {}, "valid", None),
])
def test_requirement_rules(node_type, config, expected_status, expected_requirement):
    validation = check_node_requirements(make_node("n1", node_type, **config))
    assert validation.status == expected_status
    if expected_requirement is None:
        assert validation.requirements == []
    else:
        assert validation.requirements[0].name == expected_requirement


def test_one_validation_per_node_in_input_order():
    nodes = [
        make_node("a", "trigger"),
        make_node("b", "ai"),
        make_node("c", "action", service="email"),
        make_node("d", "data"),
    ]
    result = validate_workflow(nodes)
    assert [v.nodeId for v in result.validations] == ["a", "b", "c", "d"]


def test_errors_dominate_warnings():
    nodes = [make_node("a", "ai"), make_node("b", "action", service="sms_provider")]
    result = validate_workflow(nodes)
    assert result.isValid is False
    assert result.canRunAnyway is False


def test_warnings_alone_allow_running_anyway():
    nodes = [make_node("a", "trigger"), make_node("b", "action", service="notification_provider")]
    result = validate_workflow(nodes)
    assert result.isValid is True
    assert result.canRunAnyway is True


def test_all_valid_does_not_need_override():
    result = validate_workflow([make_node("a", "trigger"), make_node("b", "action", method="LOG")])
    assert result.isValid is True
    assert result.canRunAnyway is False


def test_stored_credential_satisfies_requirement():
    nodes = [make_node("a", "action", service="sms_provider")]

    result = validate_workflow(nodes, available_credentials=["twilio"])

    assert result.isValid is True
    validation = result.validations[0]
    assert validation.status == "valid"
    assert validation.requirements[0].status == "configured"


def test_stored_credential_does_not_cover_config_requirements():
    result = validate_workflow([make_node("a", "action", service="webhook")], available_credentials=["twilio", "email"])
    assert result.validations[0].status == "error"


def test_failing_nodes_carry_suggested_fixes():
    result = validate_workflow([make_node("a", "trigger", event_source="sms_inbound")])
    assert "Check your Twilio API key is correct" in result.validations[0].suggestedFixes


def test_error_fixes_match_known_patterns():
    fixes = generate_error_fixes("Twilio returned 429 rate limit", "action")
    assert fixes[:3] == [
        "Check your Twilio API key is correct",
        "Verify phone number is registered with Twilio",
        "Check Twilio account balance",
    ]
    assert "Wait a few minutes before retrying" in fixes
    assert len(fixes) == 6


def test_error_fixes_unauthorized():
    fixes = generate_error_fixes("Request was unauthorized", "ai")
    assert fixes == [
        "Verify API credentials are correct",
        "Check if credentials have expired",
        "Ensure account has necessary permissions",
    ]


def test_error_fixes_generic_fallback():
    fixes = generate_error_fixes("Something odd happened", "data")
    assert fixes == [
        "Review node configuration settings",
        "Check error logs for more details",
        "Try running the workflow again",
    ]
