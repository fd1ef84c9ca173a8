from fastapi import APIRouter
from flowgate.routes import workflows, runs, test_suites

# Main router that includes all other routers
router = APIRouter()

# Register all routers
router.include_router(workflows.router)
router.include_router(runs.router)
router.include_router(test_suites.router)
