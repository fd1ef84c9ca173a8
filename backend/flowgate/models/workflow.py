import threading
from enum import Enum
from typing import List, Dict, Any, Optional, Callable, Awaitable

from pydantic import BaseModel, ConfigDict, Field

from flowgate import config


class NodeType(str, Enum):
    TRIGGER = "trigger"
    CONDITION = "condition"
    ACTION = "action"
    DATA = "data"
    AI = "ai"


class ExecutionPolicy(str, Enum):
    """What the interpreter does after a node reports status 'error'."""
    HALT = "halt"          # stop the run after the failed node
    SKIP = "skip"          # keep going, ignore the failed node's output
    CONTINUE = "continue"  # keep going, thread the failed node's output onward


class WorkflowNode(BaseModel):
    id: str
    type: str
    title: str = ""
    description: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)

    # The editor sends layout info (position, icons...) we don't care about
    model_config = ConfigDict(extra="ignore")

    @property
    def node_type(self) -> Optional[NodeType]:
        """The known node type, or None for subtypes without dedicated behavior."""
        try:
            return NodeType(self.type)
        except ValueError:
            return None


class NodeResult(BaseModel):
    status: str
    message: str
    data: Optional[Any] = None
    error: Optional[str] = None
    # Evaluated operands, request metadata and the like
    details: Optional[Dict[str, Any]] = None
    # Token usage reported by the language model
    usage: Optional[Dict[str, Any]] = None


class TraceStep(BaseModel):
    nodeId: str
    nodeType: str
    nodeTitle: str
    result: NodeResult
    timestamp: str


class ExecutionTrace(BaseModel):
    steps: List[TraceStep] = Field(default_factory=list)
    duration_ms: int = 0
    policy: ExecutionPolicy = ExecutionPolicy.CONTINUE
    halted: bool = False
    cancelled: bool = False

    def execution_data(self) -> Dict[str, Any]:
        """The accumulated data as seen by nodes and callers: {"steps": [...]}."""
        return {"steps": [step.model_dump(mode="json") for step in self.steps]}


class ExecutionContext(BaseModel):
    workspace_id: Optional[str] = None
    workflow_id: Optional[str] = None
    triggered_by: Optional[str] = None
    # Upstream data handed to the first node
    trigger_data: Optional[Any] = None
    policy: ExecutionPolicy = Field(default_factory=lambda: ExecutionPolicy(config.EXECUTION_POLICY))
    node_timeout: float = Field(default_factory=lambda: config.NODE_TIMEOUT_SECONDS)
    cancel_event: threading.Event = Field(default_factory=threading.Event)
    # Awaited after every appended trace step (used for live streaming)
    on_step: Optional[Callable[[TraceStep], Awaitable[None]]] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


class ExecutionRequest(BaseModel):
    # Shape is checked by the interpreter, not here
    nodes: Optional[Any] = None
    workspaceId: Optional[str] = None
    workflowId: Optional[str] = None
    triggeredBy: Optional[str] = None
    triggerData: Optional[Any] = None
    requireApproval: bool = False
    executionPolicy: Optional[ExecutionPolicy] = None

    def to_context(self) -> ExecutionContext:
        context = ExecutionContext(
            workspace_id=self.workspaceId,
            workflow_id=self.workflowId,
            triggered_by=self.triggeredBy,
            trigger_data=self.triggerData,
        )
        if self.executionPolicy is not None:
            context.policy = self.executionPolicy
        return context


class ExecutionState(BaseModel):
    """Mutable state of one interpreter call. Never shared between calls."""
    context: ExecutionContext
    trace: ExecutionTrace
    # Node id -> output data, for handlers that address an earlier node by id
    outputs: Dict[str, Any] = Field(default_factory=dict)
    # Data handed to the next node
    upstream: Optional[Any] = None
    # Set once the interpreter has stopped waiting for the node holding this state
    abandon_event: threading.Event = Field(default_factory=threading.Event)

    model_config = ConfigDict(arbitrary_types_allowed=True)
