import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flowgate import config
from flowgate.routes import router
from flowgate.utils.run_registry import get_storage_summary

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    # Code here runs on startup
    logger.info(f"Starting Flowgate Workflow Backend (model: {config.AI_MODEL}, node timeout: {config.NODE_TIMEOUT_SECONDS}s, policy: {config.EXECUTION_POLICY})...")
    yield
    # Code here runs on shutdown
    logger.info(f"Flowgate Workflow Backend shutting down with {get_storage_summary()}...")

# Create FastAPI application
app = FastAPI(title="Flowgate Workflow Backend", lifespan=lifespan)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify frontend URL
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include all routes
app.include_router(router)

# Root endpoint
@app.get("/")
async def read_root():
    return {"message": "Welcome to the Flowgate Workflow Backend!"}

# Main entry point
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("flowgate.main:app", host="0.0.0.0", port=8000, reload=True)
