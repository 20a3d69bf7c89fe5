"""
raidledger.api.main — FastAPI application entry point
======================================================

Run with::

    uvicorn raidledger.api.main:app --port 4000

Every :class:`~raidledger.errors.RaidLedgerError` is rendered as::

    {"error": {"code": "RUN_NOT_LIVE", "message": "...", "fields": {...}}}

Anything else becomes a generic ``500 INTERNAL_ERROR``; the caller retries
the whole operation, which is safe because crediting is idempotent.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from raidledger import __version__  # noqa: E402
from raidledger.api.deps import get_engine  # noqa: E402
from raidledger.api.routes.guilds import router as guilds_router  # noqa: E402
from raidledger.api.routes.quota import router as quota_router  # noqa: E402
from raidledger.api.routes.runs import router as runs_router  # noqa: E402
from raidledger.errors import RaidLedgerError  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Allowed CORS origins from ``CORS_ALLOW_ORIGINS`` (comma-separated)."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine."""
    engine = get_engine()
    logger.info("RaidLedger API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("RaidLedger API shutting down")


app = FastAPI(
    title="RaidLedger API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RaidLedgerError)
async def raidledger_error_handler(request: Request, exc: RaidLedgerError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}},
    )


# Mount routers
app.include_router(runs_router, prefix="/api")
app.include_router(quota_router, prefix="/api")
app.include_router(guilds_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
