"""FastAPI server for the procurement agent.

Run with:
    uvicorn procurement_agent.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import inspect
import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from procurement_agent.agent import create_procurement_agent
from procurement_agent.api.routes import router
from procurement_agent.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from procurement_agent.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: wire the orchestrator once and store it in app state.

    The gateway (with its rate limiter and circuit breaker) is created
    here, so every request in this process shares one instance per
    provider.
    """
    logger.info("Wiring procurement agent…")
    application.state.agent = create_procurement_agent()
    logger.info("Agent ready.")
    yield
    services = application.state.agent.services
    aclose = getattr(services, "aclose", None)
    if aclose is not None and inspect.iscoroutinefunction(aclose):
        await aclose()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Procurement Agent",
    description=(
        "Conversational procurement assistant: search the catalog, "
        "manage the cart and submit purchase requests."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (needed for the web frontend) ───────────────────────────────
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
    """Attach a unique request ID to every request for log correlation.

    The ID is echoed in the ``X-Request-ID`` response header so the
    client can reference it in support tickets.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Procurement Agent",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting procurement agent API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "procurement_agent.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
