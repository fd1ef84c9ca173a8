import os

# Logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Language-model endpoint used by ai nodes
AI_MODEL = os.environ.get("AI_MODEL", "gpt-4o-mini")
AI_API_KEY = os.environ.get("AI_API_KEY") or os.environ.get("OPENAI_API_KEY")
AI_API_BASE = os.environ.get("AI_API_BASE")

# Execution limits
MAX_WORKFLOW_NODES = int(os.environ.get("MAX_WORKFLOW_NODES", "100"))
NODE_TIMEOUT_SECONDS = float(os.environ.get("NODE_TIMEOUT_SECONDS", "30"))
EXECUTION_POLICY = os.environ.get("EXECUTION_POLICY", "continue").lower()

# Background runs
MAX_STORED_RUNS = int(os.environ.get("MAX_STORED_RUNS", "100"))
SSE_POLL_SECONDS = float(os.environ.get("SSE_POLL_SECONDS", "1.0"))
