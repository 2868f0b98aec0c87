# main.py — MBEE API server
# Wires the routers together with request ids, response hardening and the
# MBEE error → HTTP status mapping.

import os
import uuid
import time
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text

from database import init_db, close_db, get_db_context, DEFAULT_ADMIN_PASSWORD
from errors import MBEEError, get_status_code

MBEE_VERSION = "1.0.0"

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("mbee")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def config_warnings() -> List[str]:
    """Configuration problems worth shouting about at startup."""
    found = []
    if len(os.getenv("JWT_SECRET_KEY", "")) < 32:
        found.append("JWT_SECRET_KEY is not set or shorter than 32 characters; tokens will not survive a restart")
    if DEFAULT_ADMIN_PASSWORD == "Admin12345":
        found.append("The default admin password is in use; set MBEE_DEFAULT_ADMIN_PASSWORD")
    if os.getenv("ARTIFACT_STRATEGY", "local") == "s3" and not os.getenv("S3_BUCKET"):
        found.append("ARTIFACT_STRATEGY=s3 but S3_BUCKET is not set; using the default bucket name")
    return found


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting MBEE v%s (artifact strategy: %s)", MBEE_VERSION, os.getenv("ARTIFACT_STRATEGY", "local"))
    await init_db()
    for warning in config_warnings():
        logger.warning(warning)
    yield
    logger.info("Shutting down MBEE")
    await close_db()


app = FastAPI(
    title="MBEE",
    description="Model-Based Engineering Environment: orgs, projects, branches, elements and artifacts",
    version=MBEE_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:9080").split(",")],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE
# ============================================================

@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag every request with an id, time it and harden the response."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = request.headers.get("X-Correlation-ID", request_id)
    response.headers["X-Response-Time"] = f"{elapsed:.4f}s"
    response.headers.update(SECURITY_HEADERS)

    logger.info("%s %s → %d (%.3fs) [rid=%s]",
                request.method, request.url.path, response.status_code, elapsed, request_id[:8])
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _error_response(request: Request, status_code: int, detail: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "request_id": getattr(request.state, "request_id", None)},
    )


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


@app.exception_handler(MBEEError)
async def mbee_error_handler(request: Request, exc: MBEEError):
    return _error_response(request, get_status_code(exc), exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        clean = {"type": str(err.get("type", "unknown")), "loc": list(err.get("loc", [])), "msg": str(err.get("msg", ""))}
        if "input" in err:
            clean["input"] = _json_safe(err["input"])
        errors.append(clean)
    return _error_response(request, 422, errors)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    return _error_response(request, 500, "Internal server error")


# ============================================================
# ROUTERS
# ============================================================

from routers import (  # noqa: E402
    auth, users, organizations, projects, branches,
    elements, artifacts, webhooks,
)

for module in (auth, users, organizations, projects, branches, elements, artifacts, webhooks):
    app.include_router(module.router)


# ============================================================
# STATUS ENDPOINTS
# ============================================================

@app.get("/health")
async def health_check():
    try:
        async with get_db_context() as db:
            await db.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        database = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "version": MBEE_VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": database,
    }


@app.get("/api/test")
async def test_connection():
    """Returns 200 with no body; used by clients to check the server is up"""
    return Response(status_code=200)


@app.get("/api/version")
async def get_version():
    return {"version": MBEE_VERSION}


@app.get("/")
async def root():
    return {"name": "MBEE", "version": MBEE_VERSION, "docs": "/docs", "health": "/health"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 9080)),
        reload=os.getenv("ENVIRONMENT") != "production",
    )
