"""
Research Orchestrator — FastAPI application entry point.

Starts up with DB initialization, wires store, worker gateway and phase
orchestrator together, registers the routers, and exposes a health check so
Docker knows we're alive.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from app.database import close_db, init_db
from app.gateway.worker_gateway import WorkerGateway
from app.notifications.notifier import get_notifier
from app.research.orchestrator import PhaseOrchestrator
from app.research.store import SessionStore
from app.routers import reports, research
from app.schemas.api import HealthResponse
from app.scheduling.scheduler import shutdown_scheduler, start_scheduler

VERSION = "0.1.0"

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Research Orchestrator backend...")
    await init_db()
    logger.info("Database initialized.")

    gateway = WorkerGateway(settings)
    missing = [name for name, ok in gateway.ping().items() if not ok]
    if missing:
        logger.warning(f"Worker endpoints not configured: {', '.join(missing)}")

    orchestrator = PhaseOrchestrator(
        store=SessionStore(min_words=settings.min_problem_words),
        gateway=gateway,
        notifier=get_notifier(),
        settings=settings,
    )
    app.state.orchestrator = orchestrator
    app.state.gateway = gateway

    # Phases orphaned by a previous shutdown are expired right away.
    expired = await orchestrator.expire_stale_phases()
    if expired:
        logger.info(f"Expired {expired} stale phase(s) left over from a previous run.")

    start_scheduler(orchestrator, settings.stale_sweep_interval_minutes)
    yield
    logger.info("Shutting down...")
    shutdown_scheduler()
    await orchestrator.shutdown()
    gateway.close()
    await close_db()


app = FastAPI(
    title="Research Orchestrator",
    description="Six-phase research pipeline: problem refinement → papers → analysis → solutions → proposal.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(research.router, prefix="/api/research", tags=["research"])
app.include_router(reports.router, prefix="/api/report", tags=["report"])


# ── Health check ───────────────────────────────────────────────────────────
@app.get("/api/health", tags=["health"], response_model=HealthResponse)
async def health() -> HealthResponse:
    configured = settings.configured_webhooks()
    return HealthResponse(
        status="ok",
        version=VERSION,
        workers_configured=configured,
        all_workers_ready=all(configured.values()),
    )
