from typing import List, Optional, Literal

from pydantic import BaseModel, Field

from flowgate.models.workflow import WorkflowNode

RiskLevel = Literal["safe", "low", "medium", "high", "critical"]
RuleType = Literal["code_pattern", "data_pattern", "network_pattern", "logic_pattern"]
ValidationStatus = Literal["valid", "warning", "error"]

# Lowest to highest
RISK_ORDER: List[str] = ["safe", "low", "medium", "high", "critical"]


class Requirement(BaseModel):
    name: str
    status: Literal["missing", "configured"]
    actionLabel: Optional[str] = None
    actionType: Optional[Literal["credential", "permission", "config"]] = None


class NodeValidation(BaseModel):
    nodeId: str
    nodeTitle: str
    nodeType: str
    status: ValidationStatus = "valid"
    message: Optional[str] = None
    requirements: List[Requirement] = Field(default_factory=list)
    suggestedFixes: List[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    isValid: bool
    canRunAnyway: bool
    validations: List[NodeValidation] = Field(default_factory=list)


class SecurityIssue(BaseModel):
    rule_name: str
    rule_type: RuleType
    risk_level: RiskLevel
    description: str
    remediation: str
    location: str
    matched_pattern: Optional[str] = None


class SecurityScanResult(BaseModel):
    risk_level: RiskLevel = "safe"
    issues: List[SecurityIssue] = Field(default_factory=list)
    passed: bool = True


class AdmissionDecision(BaseModel):
    valid: bool
    outcome: Literal["allowed", "blocked", "needs-approval"]
    reason: Optional[str] = None
    scanResult: SecurityScanResult


# Request bodies for the admission endpoints

class NodesPayload(BaseModel):
    nodes: List[WorkflowNode] = Field(default_factory=list)


class ValidationRequest(NodesPayload):
    credentials: Optional[List[str]] = None


class AdmissionRequest(NodesPayload):
    requireApproval: bool = False


class ErrorFixesRequest(BaseModel):
    error: str
    nodeType: str = ""
