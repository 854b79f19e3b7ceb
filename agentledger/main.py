"""
Agent Ledger - Escrow Settlement + Hybrid Agent Trust

Agents discover one another, establish trust and exchange value through
escrow-guarded payments on a shared ledger.

Start with:
    uvicorn agentledger.main:app --host 0.0.0.0 --port 8000
"""
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from agentledger.api.agents import admin_router as agents_admin_router
from agentledger.api.agents import router as agents_router
from agentledger.api.escrow import router as escrow_router
from agentledger.api.interactions import router as interactions_router
from agentledger.config import settings
from agentledger.errors import AgentLedgerError
from agentledger.services import shutdown as services_shutdown

VERSION = "1.0.0"

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.INFO if settings.is_production else logging.DEBUG
    ),
)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("agentledger_starting", version=VERSION, environment=settings.ENVIRONMENT,
                store_backend=settings.STORE_BACKEND, ledger_backend=settings.LEDGER_BACKEND)
    yield
    await services_shutdown()
    logger.info("agentledger_stopped")


app = FastAPI(
    title="Agent Ledger",
    description="Escrow settlement and hybrid trust scoring for autonomous agents.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())[:8]
    start = time.time()
    request.state.request_id = request_id
    response = await call_next(request)
    duration_ms = round((time.time() - start) * 1000, 2)
    response.headers["X-Request-Id"] = request_id
    response.headers["X-Response-Time"] = f"{duration_ms}ms"
    if request.url.path != "/health":
        logger.info("request",
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    duration_ms=duration_ms,
                    request_id=request_id)
    return response


@app.exception_handler(AgentLedgerError)
async def agentledger_exception_handler(request: Request, exc: AgentLedgerError):
    request_id = getattr(request.state, "request_id", "unknown")
    log = logger.warning if exc.status_code >= 500 else logger.info
    log("request_failed", path=request.url.path, error=exc.kind, status=exc.status_code,
        request_id=request_id)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_dict(), "retryable": exc.retryable, "request_id": request_id},
        headers=headers,
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception",
                 path=request.url.path,
                 error=str(exc),
                 type=type(exc).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "Something went wrong.",
            "request_id": getattr(request.state, "request_id", "unknown"),
        },
    )


app.include_router(escrow_router)
app.include_router(agents_router)
app.include_router(agents_admin_router)
app.include_router(interactions_router)


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": "agentledger",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/")
async def root():
    return {
        "name": "Agent Ledger",
        "version": VERSION,
        "endpoints": {
            "escrows": "POST /v1/escrows, POST /v1/escrows/{id}/{release|refund|dispute|claim-expired}",
            "agents": "POST /v1/agents, GET /v1/agents/{lookup}",
            "trust": "GET /v1/agents/{lookup}/trust",
            "interactions": "POST /v1/interactions, POST /v1/interactions/{id}/complete",
            "health": "GET /health",
            "docs": "GET /docs",
        },
    }
