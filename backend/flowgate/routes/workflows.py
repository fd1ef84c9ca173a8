from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
import logging

from flowgate.models.admission import (
    AdmissionDecision,
    AdmissionRequest,
    ErrorFixesRequest,
    NodesPayload,
    SecurityScanResult,
    ValidationRequest,
    ValidationResult,
)
from flowgate.models.workflow import ExecutionRequest
from flowgate.services.preflight_service import validate_workflow, generate_error_fixes
from flowgate.services.security_service import scan_workflow_security, validate_workflow_security
from flowgate.services.workflow_service import (
    AdmissionDeniedError,
    WorkflowExecutionError,
    WorkflowInputError,
    build_execution_response,
    build_failure_response,
    run_admitted_workflow,
)

router = APIRouter(prefix="/api/workflows", tags=["workflows"])
logger = logging.getLogger(__name__)


def admission_denied_response(error: AdmissionDeniedError) -> JSONResponse:
    return JSONResponse(
        status_code=403,
        content={
            "success": False,
            "error": error.decision.reason,
            "outcome": error.decision.outcome,
            "scanResult": error.decision.scanResult.model_dump(),
        },
    )


@router.post("/validate", response_model=ValidationResult)
async def validate_workflow_endpoint(payload: ValidationRequest):
    """Pre-flight check for missing credentials and configuration"""
    return validate_workflow(payload.nodes, payload.credentials)


@router.post("/scan", response_model=SecurityScanResult)
async def scan_workflow_endpoint(payload: NodesPayload):
    """Scan workflow content against the security rules"""
    return scan_workflow_security(payload.nodes)


@router.post("/admission", response_model=AdmissionDecision)
async def admission_endpoint(payload: AdmissionRequest):
    """Decide whether a workflow may execute"""
    return validate_workflow_security(payload.nodes, payload.requireApproval)


@router.post("/error-fixes")
async def error_fixes_endpoint(payload: ErrorFixesRequest):
    """Suggest fixes for a runtime error message"""
    return {"fixes": generate_error_fixes(payload.error, payload.nodeType)}


@router.post("/execute")
async def execute_workflow_endpoint(request: ExecutionRequest):
    """Admit and execute a workflow, returning the full execution trace"""
    try:
        trace = await run_admitted_workflow(request)
    except WorkflowInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AdmissionDeniedError as e:
        return admission_denied_response(e)
    except WorkflowExecutionError as e:
        logger.error(f"Execution of workflow {request.workflowId or 'ad-hoc'} aborted: {e}")
        return JSONResponse(status_code=500, content=build_failure_response(e))
    except Exception as e:
        logger.error(f"Unhandled exception in /workflows/execute endpoint: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"An unexpected error occurred while executing the workflow: {str(e)}")
    return build_execution_response(trace)
