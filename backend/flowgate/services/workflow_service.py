import logging
import asyncio
import json
import uuid
import threading
import time
import traceback
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Set

from pydantic import ValidationError

from flowgate import config
from flowgate.models.admission import AdmissionDecision
from flowgate.models.workflow import (
    ExecutionContext,
    ExecutionPolicy,
    ExecutionRequest,
    ExecutionState,
    ExecutionTrace,
    NodeResult,
    TraceStep,
    WorkflowNode,
)
from flowgate.services.node_execution import execute_node
from flowgate.services.security_service import validate_workflow_security
from flowgate.utils import run_registry

# Set up logging
logger = logging.getLogger(__name__)

# Dictionary to hold asyncio Queues for active SSE streams, keyed by run_id
# Caution: In-memory storage, will be lost on restart.
stream_queues: Dict[str, asyncio.Queue] = {}
# Strong references to running background tasks
background_tasks: Set[asyncio.Task] = set()


class WorkflowInputError(ValueError):
    """The request is malformed; nothing was executed."""


class WorkflowExecutionError(Exception):
    """An exception escaped a node handler and aborted the whole run."""

    def __init__(self, message: str, duration_ms: int):
        super().__init__(message)
        self.duration_ms = duration_ms


class AdmissionDeniedError(Exception):
    def __init__(self, decision: AdmissionDecision):
        super().__init__(decision.reason)
        self.decision = decision


def _elapsed_ms(start_time: float) -> int:
    return int((time.monotonic() - start_time) * 1000)


def validate_execution_input(nodes: Any, context: ExecutionContext) -> List[WorkflowNode]:
    """Reject malformed input before any node runs."""
    if nodes is None or not isinstance(nodes, list):
        raise WorkflowInputError("Invalid nodes array")
    if len(nodes) > config.MAX_WORKFLOW_NODES:
        raise WorkflowInputError(f"Workflow exceeds maximum of {config.MAX_WORKFLOW_NODES} nodes")
    if not context.workspace_id:
        raise WorkflowInputError("Workspace ID is required")

    parsed_nodes = []
    for raw_node in nodes:
        if isinstance(raw_node, WorkflowNode):
            parsed_nodes.append(raw_node)
            continue
        try:
            parsed_nodes.append(WorkflowNode.model_validate(raw_node))
        except ValidationError as e:
            raise WorkflowInputError(f"Invalid nodes array: {e.errors()[0]['msg']}") from e
    return parsed_nodes


def _policy_for(node: WorkflowNode, default: ExecutionPolicy) -> ExecutionPolicy:
    override = node.config.get("on_error")
    if not override:
        return default
    try:
        return ExecutionPolicy(str(override).lower())
    except ValueError:
        logger.warning(f"Node {node.id}: Unknown on_error policy '{override}', using '{default.value}'.")
        return default


async def _run_node(node: WorkflowNode, state: ExecutionState) -> NodeResult:
    """
    Run a handler in a worker thread, bounded by the per-node timeout.

    The handler gets a view of the state with its own abandon event. On timeout
    the event is set so the handler sends no further request or model call; a
    request already in flight cannot be interrupted and runs to completion.
    """
    timeout = state.context.node_timeout if state.context.node_timeout and state.context.node_timeout > 0 else None
    node_state = state.model_copy(update={"abandon_event": threading.Event()})
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(execute_node, node, state.upstream, node_state),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        node_state.abandon_event.set()
        logger.error(f"Node {node.id} ({node.title}) timed out after {timeout}s")
        return NodeResult(
            status="error",
            message=f'Node "{node.title}" timed out after {timeout}s',
            error="timeout",
        )


async def _append_step(state: ExecutionState, node: WorkflowNode, result: NodeResult):
    step = TraceStep(
        nodeId=node.id,
        nodeType=node.type,
        nodeTitle=node.title,
        result=result,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    state.trace.steps.append(step)
    if state.context.on_step is not None:
        await state.context.on_step(step)


async def execute_workflow(nodes: Any, context: ExecutionContext) -> ExecutionTrace:
    """
    Execute nodes strictly in list order and return the execution trace.

    Each node receives the data of the step before it (the trigger data for the
    first node). Node failures are recorded in the trace and handled according
    to the execution policy; only an exception escaping a handler aborts the run,
    as a WorkflowExecutionError.
    """
    workflow_nodes = validate_execution_input(nodes, context)
    run_label = context.workflow_id or "ad-hoc"
    trace = ExecutionTrace(policy=context.policy)
    state = ExecutionState(context=context, trace=trace, upstream=context.trigger_data)

    logger.info(f"[Run {run_label}]: Executing workflow with {len(workflow_nodes)} nodes (policy: {context.policy.value})")
    start_time = time.monotonic()

    try:
        for index, node in enumerate(workflow_nodes):
            if context.cancel_event.is_set():
                if not trace.cancelled:
                    logger.warning(f"[Run {run_label}]: Cancelled before node {node.id}. Skipping remaining nodes.")
                trace.cancelled = True
                await _append_step(state, node, NodeResult(
                    status="skipped",
                    message=f'Node "{node.title}" skipped: execution cancelled',
                ))
                continue

            logger.info(f"[Run {run_label}]: Executing node {index + 1}/{len(workflow_nodes)}: {node.type} {node.title}")
            result = await _run_node(node, state)
            await _append_step(state, node, result)

            if result.status == "error":
                policy = _policy_for(node, context.policy)
                logger.warning(f"[Run {run_label}]: Node {node.id} failed ({result.error}). Policy: {policy.value}")
                if policy == ExecutionPolicy.HALT:
                    trace.halted = True
                    break
                if policy == ExecutionPolicy.SKIP:
                    continue

            state.upstream = result.data
            state.outputs[node.id] = result.data
    except Exception as e:
        duration_ms = _elapsed_ms(start_time)
        logger.error(f"[Run {run_label}]: Execution failed after {duration_ms}ms: {e}", exc_info=True)
        raise WorkflowExecutionError(str(e), duration_ms) from e

    trace.duration_ms = _elapsed_ms(start_time)
    logger.info(f"[Run {run_label}]: Execution completed in {trace.duration_ms} ms")
    return trace


def build_execution_response(trace: ExecutionTrace) -> Dict[str, Any]:
    return {
        "success": True,
        "duration": f"{trace.duration_ms}ms",
        "duration_ms": trace.duration_ms,
        "result": trace.execution_data(),
        "policy": trace.policy.value,
        "halted": trace.halted,
        "cancelled": trace.cancelled,
    }


def build_failure_response(error: WorkflowExecutionError) -> Dict[str, Any]:
    return {
        "success": False,
        "error": str(error),
        "duration": f"{error.duration_ms}ms",
        "duration_ms": error.duration_ms,
    }


def admit_workflow(request: ExecutionRequest, context: ExecutionContext) -> List[WorkflowNode]:
    """Check the input shape and pass the admission gate, or raise."""
    nodes = validate_execution_input(request.nodes, context)
    decision = validate_workflow_security(nodes, request.requireApproval)
    if not decision.valid:
        logger.warning(f"Workflow {context.workflow_id or 'ad-hoc'} not admitted ({decision.outcome}): {decision.reason}")
        raise AdmissionDeniedError(decision)
    return nodes


async def run_admitted_workflow(request: ExecutionRequest) -> ExecutionTrace:
    context = request.to_context()
    nodes = admit_workflow(request, context)
    return await execute_workflow(nodes, context)


# --- Background runs with live progress ---

async def run_stream_generator(run_id: str, request):
    """Async generator for streaming step events of a background run."""
    logger.info(f"[SSE Connect {run_id}]: Attempting to connect stream.")
    client_ip = request.client.host if request.client else "Unknown"
    queue = stream_queues.get(run_id)

    if not queue:
        record = run_registry.get_run(run_id)
        if record and record["status"] in run_registry.FINISHED_STATUSES:
            # Client connected after the run ended: replay the final result
            yield json.dumps({"step": "__END__", "run_id": run_id, "status": record["status"],
                              "response": record["response"], "timestamp": time.time()})
            return
        logger.warning(f"[SSE Connect {run_id}]: Queue not found for run_id. Maybe run finished or never started?")
        yield json.dumps({
            "step": "Error",
            "run_id": run_id,
            "status": "Failed",
            "error": "Run stream unavailable or run already completed.",
            "timestamp": time.time(),
        })
        return

    logger.info(f"[SSE Connect {run_id}]: Client {client_ip} connected, using existing queue.")
    try:
        while True:
            if await request.is_disconnected():
                logger.warning(f"[SSE Disconnect {run_id}]: Client {client_ip} disconnected.")
                break

            try:
                event_json = await asyncio.wait_for(queue.get(), timeout=config.SSE_POLL_SECONDS)
            except asyncio.TimeoutError:
                # No new events yet, check disconnect and wait again
                continue

            yield event_json
            queue.task_done()
            if json.loads(event_json).get("step") == "__END__":
                logger.info(f"[SSE Generator End {run_id}]: END event received, closing stream.")
                break
    except asyncio.CancelledError:
        logger.info(f"[SSE Cancelled {run_id}]: Stream cancelled for client {client_ip}.")
        raise
    finally:
        if stream_queues.pop(run_id, None) is not None:
            logger.info(f"[SSE Cleanup {run_id}]: Removed queue.")


async def execute_run_logic(run_id: str, nodes: List[WorkflowNode], context: ExecutionContext, log_queue: asyncio.Queue):
    """The background run itself: execute, record the outcome, close the stream."""
    run_registry.update_run_status(run_id, "running")
    status = "failed"
    response: Dict[str, Any] = {"success": False, "error": "Run ended unexpectedly"}
    try:
        await log_queue.put(json.dumps({"step": "Starting Workflow Execution", "run_id": run_id,
                                        "status": "Pending", "timestamp": time.time()}))
        trace = await execute_workflow(nodes, context)
        response = build_execution_response(trace)
        status = "cancelled" if trace.cancelled else "completed"
    except WorkflowExecutionError as e:
        response = build_failure_response(e)
    except asyncio.CancelledError:
        status = "cancelled"
        response = {"success": False, "error": "Run task was cancelled"}
        raise
    except Exception as e:
        response = {"success": False, "error": str(e)}
        raise
    finally:
        for evicted_id in run_registry.finish_run(run_id, status, response):
            stream_queues.pop(evicted_id, None)

        logger.info(f"[Run {run_id}]: Background run {status}. Sending __END__ event to SSE queue.")
        log_queue.put_nowait(json.dumps({"step": "__END__", "run_id": run_id, "status": status,
                                         "response": response, "timestamp": time.time()}))


async def start_run(request: ExecutionRequest) -> str:
    """Admit a workflow, start it as a background task and return the run_id."""
    context = request.to_context()
    nodes = admit_workflow(request, context)

    run_id = str(uuid.uuid4())
    log_queue: asyncio.Queue = asyncio.Queue()
    stream_queues[run_id] = log_queue

    async def push_step(step: TraceStep):
        await log_queue.put(json.dumps({
            "step": f"Finished Node: {step.nodeTitle} ({step.nodeType})",
            "run_id": run_id,
            "node_id": step.nodeId,
            "status": step.result.status,
            "trace_step": step.model_dump(mode="json"),
            "timestamp": time.time(),
        }))

    context.on_step = push_step
    run_registry.register_run(run_id, context)
    logger.info(f"Generated run_id: {run_id}, created log queue for workflow: {context.workflow_id or 'ad-hoc'}")

    task = asyncio.create_task(execute_run_logic(run_id, nodes, context, log_queue))

    def handle_task_exception(task: asyncio.Task):
        try:
            exc = task.exception()
            if exc:
                logger.error(f"Background task for run {run_id} failed with error: {exc}")
                logger.error("".join(traceback.format_exception(exc)))
        except asyncio.CancelledError:
            logger.warning(f"Background task for run {run_id} was cancelled")

    background_tasks.add(task)
    task.add_done_callback(background_tasks.discard)
    task.add_done_callback(handle_task_exception)
    return run_id


def cancel_run(run_id: str) -> bool:
    """Signal a running execution to stop before its next node."""
    context = run_registry.get_run_context(run_id)
    if context is None:
        return False
    context.cancel_event.set()
    logger.info(f"[Run {run_id}]: Cancellation requested.")
    return True


def get_run(run_id: str) -> Optional[Dict[str, Any]]:
    return run_registry.get_run(run_id)
