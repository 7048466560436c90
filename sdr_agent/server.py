"""FastAPI server for the SDR lead-qualification agent.

Run with:
    uvicorn sdr_agent.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from sdr_agent.agent import create_sdr_agent
from sdr_agent.api.routes import router
from sdr_agent.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from sdr_agent.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: wire the orchestrator once and store it in app state.

    Conversations live in the orchestrator's in-memory store, so every
    request must reach the same instance.
    """
    logger.info("Wiring SDR agent…")
    application.state.orchestrator = create_sdr_agent()
    logger.info("Agent ready.")
    yield
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="SDR Lead Qualification Agent",
    description=(
        "Conversational sales assistant that qualifies website visitors, "
        "registers them as CRM leads and books discovery meetings."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (the chat widget is served from another origin) ─────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID to every request for log correlation.

    A client-supplied ``X-Request-ID`` is reused; otherwise one is
    generated.  It is echoed back in the response headers.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "SDR Lead Qualification Agent",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting SDR agent API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "sdr_agent.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
