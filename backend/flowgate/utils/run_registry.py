import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flowgate import config
from flowgate.models.workflow import ExecutionContext

# Set up logging
logger = logging.getLogger(__name__)

FINISHED_STATUSES = ("completed", "failed", "cancelled")

# In-memory run records, oldest first. Lost on restart.
execution_runs: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
# Run ID -> context of the (possibly still running) execution
run_contexts: Dict[str, ExecutionContext] = {}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def register_run(run_id: str, context: ExecutionContext) -> Dict[str, Any]:
    record = {
        "run_id": run_id,
        "workflow_id": context.workflow_id,
        "workspace_id": context.workspace_id,
        "triggered_by": context.triggered_by,
        "policy": context.policy.value,
        "status": "pending",
        "started_at": _now(),
        "finished_at": None,
        "response": None,
    }
    execution_runs[run_id] = record
    run_contexts[run_id] = context
    return record


def get_run(run_id: str) -> Optional[Dict[str, Any]]:
    return execution_runs.get(run_id)


def get_run_context(run_id: str) -> Optional[ExecutionContext]:
    return run_contexts.get(run_id)


def update_run_status(run_id: str, status: str):
    record = execution_runs.get(run_id)
    if record is None:
        logger.warning(f"Cannot update run {run_id} - not found")
        return
    record["status"] = status


def finish_run(run_id: str, status: str, response: Dict[str, Any]) -> List[str]:
    """Store the final response of a run and drop the oldest finished runs beyond the limit.

    Returns the IDs of evicted runs.
    """
    record = execution_runs.get(run_id)
    if record is None:
        logger.warning(f"Cannot finish run {run_id} - not found")
        return []
    record["status"] = status
    record["finished_at"] = _now()
    record["response"] = response
    run_contexts.pop(run_id, None)

    evicted = []
    finished_ids = [rid for rid, r in execution_runs.items() if r["status"] in FINISHED_STATUSES]
    while len(execution_runs) > config.MAX_STORED_RUNS and finished_ids:
        oldest = finished_ids.pop(0)
        del execution_runs[oldest]
        evicted.append(oldest)
    if evicted:
        logger.info(f"Evicted {len(evicted)} finished runs from the run registry")
    return evicted


def clear_runs():
    execution_runs.clear()
    run_contexts.clear()


def get_storage_summary() -> str:
    active = sum(1 for r in execution_runs.values() if r["status"] not in FINISHED_STATUSES)
    return f"{len(execution_runs)} runs ({active} active)"
