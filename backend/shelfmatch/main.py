"""
ShelfMatch API
FastAPI backend for shelf product resolution: catalog search, text pre-filter,
pairwise visual comparison and consolidation, plus neighbor-based contextual
correction. Batch runs stream progress as Server-Sent Events.
"""
import os
import sys
import time
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load .env before anything reads configuration
load_dotenv()

from shelfmatch.config import FunnelSettings, VLM_PRIMARY_MODEL  # noqa: E402
from shelfmatch.services.logging_config import setup_logging  # noqa: E402
from shelfmatch.services.middleware import RequestTimingMiddleware  # noqa: E402
from shelfmatch.services.perf_monitor import tracker as perf_tracker  # noqa: E402

_log_level = os.getenv("LOG_LEVEL", "INFO")
_json_logs = os.getenv("LOG_FORMAT", "json").lower() != "text"
setup_logging(level=_log_level, json_output=_json_logs)
logger = logging.getLogger("shelfmatch-api")

_PROCESS_START = time.monotonic()

for var in ["DATABASE_URL", "CATALOG_EMAIL", "CATALOG_PASSWORD"]:
    if not os.getenv(var):
        logger.warning(f"MISSING env var: {var} — running in dev mode")
if not os.getenv("GEMINI_API_KEY"):
    logger.info("Optional env var not set: GEMINI_API_KEY")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from shelfmatch.db import AsyncSessionLocal, init_db
    from shelfmatch.services.batch_jobs import BatchJobs
    from shelfmatch.services.catalog_client import CatalogClient
    from shelfmatch.services.llm_client import VisionLLMClient
    from shelfmatch.services.prompts import PromptLibrary
    from shelfmatch.services.result_store import ResultStore

    await init_db()

    settings = FunnelSettings.from_env()
    store = ResultStore(AsyncSessionLocal)
    catalog = CatalogClient(result_cap=settings.catalog_result_cap)
    app.state.store = store
    app.state.jobs = BatchJobs(
        store=store,
        catalog=catalog,
        llm=VisionLLMClient(),
        prompts=PromptLibrary(AsyncSessionLocal),
        settings=settings,
    )
    logger.info("Resolution pipeline ready.")
    yield
    await catalog.aclose()


app = FastAPI(
    title="ShelfMatch API",
    version="1.0.0",
    description="Resolves retail shelf detections to catalog products",
    lifespan=lifespan,
)

_cors_default = "http://localhost:3000,http://localhost:8000"
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", _cors_default).split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Requested-With", "X-Request-ID"],
)
# Request timing + X-Request-ID must be outermost so it wraps all other middleware
app.add_middleware(RequestTimingMiddleware)

from shelfmatch.api.batch_routes import router as batch_router  # noqa: E402

app.include_router(batch_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "version": "1.0.0",
        "db_configured": bool(os.getenv("DATABASE_URL")),
        "catalog_configured": bool(os.getenv("CATALOG_EMAIL") and os.getenv("CATALOG_PASSWORD")),
        "vlm_primary": VLM_PRIMARY_MODEL,
    }


@app.get("/api/metrics")
async def metrics():
    """
    Funnel throughput, per-stage average duration and error counts, sourced
    from the in-process PerformanceTracker.
    """
    memory_mb: float = 0.0
    try:
        import resource  # Unix only
        usage = resource.getrusage(resource.RUSAGE_SELF)
        # ru_maxrss is in kilobytes on Linux, bytes on macOS
        divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
        memory_mb = round(usage.ru_maxrss / divisor, 2)
    except ImportError:
        memory_mb = 0.0

    return {
        "uptime_seconds": round(time.monotonic() - _PROCESS_START, 1),
        "memory_usage_mb": memory_mb,
        **perf_tracker.get_metrics(),
    }
