"""
Fixed rule tables consulted by the pre-flight validator and the security scanner.

Both tables are plain data: adding a rule never requires touching the code that
walks them.
"""
import re
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class SecurityRule(BaseModel):
    name: str
    rule_type: str
    # None for rules that are evaluated structurally over the whole workflow
    pattern: Optional[re.Pattern] = None
    risk: str
    description: str
    remediation: str

    model_config = ConfigDict(frozen=True)


class RequirementRule(BaseModel):
    node_type: str
    applies: Callable[[Dict[str, Any]], bool]
    requirement: str
    action_label: str
    action_type: str
    status: str
    message: str
    # Key looked up in the caller's credentials on file; None when it can't be satisfied that way
    credential: Optional[str] = None

    model_config = ConfigDict(frozen=True)


SECURITY_RULES: Tuple[SecurityRule, ...] = (
    SecurityRule(
        name="sql-injection-attempt",
        rule_type="code_pattern",
        pattern=re.compile(r"(DROP|DELETE|TRUNCATE|ALTER)\s+(TABLE|DATABASE)", re.IGNORECASE),
        risk="critical",
        description="Potential SQL injection attempt detected",
        remediation="Review workflow for SQL injection vulnerabilities",
    ),
    SecurityRule(
        name="command-injection",
        rule_type="code_pattern",
        pattern=re.compile(r"(eval|exec|system|subprocess|shell)", re.IGNORECASE),
        risk="critical",
        description="Command execution attempt detected",
        remediation="Remove command execution code from workflow",
    ),
    SecurityRule(
        name="sensitive-data-exposure",
        rule_type="data_pattern",
        pattern=re.compile(r"(password|secret|api[_-]?key|token|private[_-]?key)\s*[:=]", re.IGNORECASE),
        risk="high",
        description="Potential hardcoded credentials detected",
        remediation="Remove hardcoded credentials, use secure credential storage",
    ),
    SecurityRule(
        name="external-url-access",
        rule_type="network_pattern",
        pattern=re.compile(r"https?://(?!api\.|localhost|127\.0\.0\.1)", re.IGNORECASE),
        risk="medium",
        description="External URL access detected",
        remediation="Review external API calls and add to allowlist",
    ),
    SecurityRule(
        name="file-system-access",
        rule_type="code_pattern",
        pattern=re.compile(r"(fs\.|file\.|readFile|writeFile|unlink)", re.IGNORECASE),
        risk="high",
        description="File system access detected",
        remediation="Remove file system operations",
    ),
    SecurityRule(
        name="excessive-loops",
        rule_type="code_pattern",
        pattern=re.compile(r"while\s*\(\s*true\s*\)", re.IGNORECASE),
        risk="high",
        description="Infinite loop detected",
        remediation="Add proper loop termination conditions",
    ),
    SecurityRule(
        name="crypto-mining",
        rule_type="code_pattern",
        pattern=re.compile(r"(mining|miner|hashrate|cryptonight)", re.IGNORECASE),
        risk="critical",
        description="Potential crypto mining code",
        remediation="Remove cryptocurrency mining code",
    ),
    SecurityRule(
        name="data-exfiltration",
        rule_type="code_pattern",
        pattern=re.compile(r"(btoa|atob|Buffer\.from.*base64)", re.IGNORECASE),
        risk="medium",
        description="Potential data encoding/exfiltration",
        remediation="Review data encoding operations",
    ),
    SecurityRule(
        name="ddos-pattern",
        rule_type="network_pattern",
        pattern=re.compile(r"for.*fetch|while.*fetch", re.IGNORECASE),
        risk="high",
        description="Potential DDoS pattern detected",
        remediation="Implement rate limiting and remove excessive requests",
    ),
    SecurityRule(
        name="prototype-pollution",
        rule_type="code_pattern",
        pattern=re.compile(r"__proto__|constructor\[.*\]", re.IGNORECASE),
        risk="high",
        description="Prototype pollution attempt",
        remediation="Remove prototype manipulation code",
    ),
    SecurityRule(
        name="xss-attempt",
        rule_type="code_pattern",
        pattern=re.compile(r"(innerHTML|outerHTML|document\.write|dangerouslySetInnerHTML)", re.IGNORECASE),
        risk="high",
        description="Potential XSS vulnerability",
        remediation="Use safe DOM manipulation methods",
    ),
    SecurityRule(
        name="excessive-network-calls",
        rule_type="logic_pattern",
        risk="medium",
        description="Too many network nodes in workflow",
        remediation="Reduce number of API calls to prevent abuse",
    ),
)

COMPLEXITY_RULE = SecurityRule(
    name="excessive-complexity",
    rule_type="logic_pattern",
    risk="low",
    description="Workflow has too many nodes",
    remediation="Consider breaking into smaller workflows",
)

MAX_NETWORK_NODES = 10
MAX_COMPLEXITY_NODES = 50


def get_security_rule(name: str) -> SecurityRule:
    for rule in SECURITY_RULES:
        if rule.name == name:
            return rule
    raise KeyError(name)


def _config_equals(key: str, expected: str) -> Callable[[Dict[str, Any]], bool]:
    return lambda node_config: node_config.get(key) == expected


REQUIREMENT_RULES: Tuple[RequirementRule, ...] = (
    RequirementRule(
        node_type="trigger",
        applies=_config_equals("event_source", "computer_activity_monitor"),
        requirement="RescueTime API key",
        action_label="Configure RescueTime",
        action_type="credential",
        status="error",
        message="Requires RescueTime API key",
        credential="rescuetime",
    ),
    RequirementRule(
        node_type="trigger",
        applies=_config_equals("event_source", "sms_inbound"),
        requirement="Twilio account + phone number",
        action_label="Connect Twilio",
        action_type="credential",
        status="error",
        message="Requires Twilio account",
        credential="twilio",
    ),
    RequirementRule(
        node_type="action",
        applies=_config_equals("service", "sms_provider"),
        requirement="Twilio credentials",
        action_label="Connect Twilio",
        action_type="credential",
        status="error",
        message="Requires SMS service configuration",
        credential="twilio",
    ),
    RequirementRule(
        node_type="action",
        applies=_config_equals("service", "email"),
        requirement="Email service",
        action_label="Configure Email",
        action_type="credential",
        status="error",
        message="Requires email service configuration",
        credential="email",
    ),
    RequirementRule(
        node_type="action",
        applies=_config_equals("service", "notification_provider"),
        requirement="Push notification permissions",
        action_label="Enable Notifications",
        action_type="permission",
        status="warning",
        message="Requires push notification permissions",
    ),
    RequirementRule(
        node_type="action",
        applies=lambda node_config: node_config.get("service") == "webhook" and not node_config.get("url"),
        requirement="Webhook URL",
        action_label="Set Webhook URL",
        action_type="config",
        status="error",
        message="Webhook URL not configured",
    ),
    RequirementRule(
        node_type="ai",
        applies=lambda node_config: not node_config.get("prompt"),
        requirement="AI prompt",
        action_label="Set AI Prompt",
        action_type="config",
        status="warning",
        message="AI prompt not configured",
    ),
)

# Substring triggers (case-sensitive) and the advice they produce, in output order
ERROR_FIX_RULES: Tuple[Tuple[Tuple[str, ...], Tuple[str, ...]], ...] = (
    (("Twilio", "SMS"), (
        "Check your Twilio API key is correct",
        "Verify phone number is registered with Twilio",
        "Check Twilio account balance",
    )),
    (("email", "SMTP"), (
        "Verify email service credentials",
        "Check SMTP server configuration",
        "Ensure sender email is verified",
    )),
    (("webhook", "HTTP"), (
        "Verify webhook URL is correct and accessible",
        "Check if the target service is online",
        "Review webhook authentication settings",
    )),
    (("authentication", "unauthorized"), (
        "Verify API credentials are correct",
        "Check if credentials have expired",
        "Ensure account has necessary permissions",
    )),
    (("rate limit", "429"), (
        "Wait a few minutes before retrying",
        "Review service rate limits",
        "Consider upgrading service plan",
    )),
)

GENERIC_ERROR_FIXES: Tuple[str, ...] = (
    "Review node configuration settings",
    "Check error logs for more details",
    "Try running the workflow again",
)
