from fastapi import APIRouter, HTTPException, Request
from sse_starlette.sse import EventSourceResponse
import logging

from flowgate.models.workflow import ExecutionRequest
from flowgate.routes.workflows import admission_denied_response
from flowgate.services.workflow_service import (
    AdmissionDeniedError,
    WorkflowInputError,
    cancel_run,
    get_run,
    run_stream_generator,
    start_run,
)

router = APIRouter(prefix="/api/runs", tags=["runs"])
logger = logging.getLogger(__name__)


@router.post("", status_code=202)
async def start_run_endpoint(request: ExecutionRequest):
    """Admit a workflow and execute it in the background"""
    try:
        run_id = await start_run(request)
    except WorkflowInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AdmissionDeniedError as e:
        return admission_denied_response(e)
    except Exception as e:
        logger.error(f"Error starting run for workflow {request.workflowId or 'ad-hoc'}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error starting workflow run: {str(e)}")
    return {"message": "Workflow execution started", "run_id": run_id, "workflow_id": request.workflowId}


@router.get("/{run_id}/stream")
async def stream_run(request: Request, run_id: str):
    """Stream step events for a run"""
    if get_run(run_id) is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return EventSourceResponse(run_stream_generator(run_id, request))


@router.get("/{run_id}")
async def get_run_endpoint(run_id: str):
    """Get a run's status and, once finished, its execution result"""
    record = get_run(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return record


@router.post("/{run_id}/cancel")
async def cancel_run_endpoint(run_id: str):
    """Stop a running execution before its next node"""
    if get_run(run_id) is None:
        raise HTTPException(status_code=404, detail="Run not found")
    if not cancel_run(run_id):
        raise HTTPException(status_code=409, detail="Run already finished")
    return {"message": f"Run {run_id} cancellation requested", "cancelled": True}
