"""
safevoice.api.main — FastAPI application entry point
======================================================

Run with::

    uvicorn safevoice.api.main:app --reload --port 8000
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from safevoice.api.deps import get_config, get_engine  # noqa: E402
from safevoice.api.routes.communities import router as communities_router  # noqa: E402
from safevoice.api.routes.memorial import router as memorial_router  # noqa: E402
from safevoice.api.routes.posts import router as posts_router  # noqa: E402
from safevoice.api.routes.wallet import router as wallet_router  # noqa: E402
from safevoice.errors import (  # noqa: E402
    ExternalClaimFailure,
    InsufficientBalance,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from safevoice.services.setup_service import bootstrap_from_config, maintenance_loop  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — load the store and resume timers."""
    runtime = bootstrap_from_config(get_engine(), get_config())
    app.state.runtime = runtime
    sweeper = asyncio.create_task(maintenance_loop(runtime))
    logger.info("SafeVoice API started — %d post(s) loaded", len(runtime.store.posts))
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    runtime.shutdown()
    logger.info("SafeVoice API shutting down")


app = FastAPI(
    title="SafeVoice API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(posts_router, prefix="/api")
app.include_router(wallet_router, prefix="/api")
app.include_router(communities_router, prefix="/api")
app.include_router(memorial_router, prefix="/api")


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
@app.exception_handler(NotFound)
async def _not_found(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def _invalid(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(PermissionDenied)
async def _forbidden(request: Request, exc: PermissionDenied):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(InsufficientBalance)
async def _insufficient(request: Request, exc: InsufficientBalance):
    return JSONResponse(
        status_code=402,
        content={"detail": str(exc), "required": exc.required, "available": exc.available},
    )


@app.exception_handler(ExternalClaimFailure)
async def _claim_failed(request: Request, exc: ExternalClaimFailure):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.get("/api/health")
async def health(request: Request):
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        return {"status": "starting"}
    return {"status": "ok", **runtime.store.snapshot()}
