import asyncio
import contextlib
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from research_engine.agents.orchestrator import ResearchOrchestrator
from research_engine.agents.session_metadata import SessionMetadataGenerator
from research_engine.api.routes import research, sessions
from research_engine.config import settings
from research_engine.services import logger as log_service
from research_engine.services.recall_repository import RecallRepository
from research_engine.services.research_service import ResearchService
from research_engine.services.session_manager import SessionManager
from research_engine.services.session_store import get_session_store
from research_engine.tools.registry import build_default_registry

INACTIVITY_SWEEP_SECONDS = 60


async def _sweep_inactive(manager: SessionManager) -> None:
    while True:
        await asyncio.sleep(INACTIVITY_SWEEP_SECONDS)
        try:
            await manager.expire_if_inactive()
        except Exception as e:
            log_service.log_failure("INACTIVITY_SWEEP_FAILED", str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    http_client = httpx.AsyncClient(follow_redirects=True)
    registry = build_default_registry(http_client)
    recall = RecallRepository()
    manager = SessionManager(
        get_session_store(),
        recall,
        metadata=SessionMetadataGenerator(),
    )
    manager.restore()
    orchestrator = ResearchOrchestrator(registry, recall=recall)

    app.state.recall = recall
    app.state.session_manager = manager
    app.state.orchestrator = orchestrator
    app.state.research_service = ResearchService(orchestrator, manager)
    sweeper = asyncio.create_task(_sweep_inactive(manager))
    log_service.log_event(
        event_type="app_started",
        message="Research engine ready",
        **orchestrator.describe(),
    )
    yield
    # Shutdown
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await http_client.aclose()


app = FastAPI(
    title="Balli Research",
    description="Multi-round research engine with streamed, citation-checked answers",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(research.router)
app.include_router(sessions.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "balli-research"}
