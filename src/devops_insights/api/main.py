"""FastAPI application.

Run with ``devops-insights api`` or ``uvicorn devops_insights.api.main:app``.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from devops_insights import __version__
from devops_insights.api.routers import (
    auth,
    azure_devops,
    catalog,
    kpis,
    repositories,
    sync,
    system_config,
    users,
)
from devops_insights.connectors.exceptions import AzureDevOpsAPIError
from devops_insights.db import close_database, get_database
from devops_insights.exceptions import AppError
from devops_insights.services.cache import get_kv_store
from devops_insights.utils.logging import configure_logging

logger = logging.getLogger(__name__)


def _error_body(
    request: Request,
    code: str,
    message: str,
    details: Optional[Any] = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": False,
        "error": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": request.url.path,
        "method": request.method,
    }
    if details is not None:
        body["details"] = details
    return body


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.code, exc.message, exc.details),
        headers=headers,
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(p) for p in error.get("loc", ())),
            "message": error.get("msg"),
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=_error_body(request, "VALIDATION_ERROR", "Validation error", details),
    )


async def integrity_error_handler(
    request: Request, exc: IntegrityError
) -> JSONResponse:
    logger.warning("Integrity error on %s: %s", request.url.path, exc.orig)
    return JSONResponse(
        status_code=409,
        content=_error_body(request, "CONFLICT", "Resource already exists"),
    )


async def upstream_error_handler(
    request: Request, exc: AzureDevOpsAPIError
) -> JSONResponse:
    logger.error("Azure DevOps request failed: %s", exc)
    return JSONResponse(
        status_code=502,
        content=_error_body(
            request,
            "UPSTREAM_ERROR",
            str(exc),
            {"upstreamStatus": exc.status_code},
        ),
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=_error_body(request, "INTERNAL_ERROR", "Internal server error"),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    database = get_database()
    await database.ping()
    logger.info("API started (version %s)", __version__)
    yield
    await close_database()


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ORIGINS", "http://localhost:3000")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def create_app() -> FastAPI:
    app = FastAPI(
        title="DevOps Insights API",
        description="Azure DevOps pull request analytics",
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

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(AzureDevOpsAPIError, upstream_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(auth.router)
    app.include_router(users.router)
    app.include_router(users.roles_router)
    app.include_router(catalog.teams_router)
    app.include_router(catalog.roles_router)
    app.include_router(catalog.stacks_router)
    app.include_router(catalog.developers_router)
    app.include_router(repositories.router)
    app.include_router(sync.router)
    app.include_router(kpis.router)
    app.include_router(system_config.router)
    app.include_router(azure_devops.router)

    @app.get("/health", tags=["health"])
    async def health() -> JSONResponse:
        """Database and Redis status. 503 when either is down."""
        try:
            await get_database().ping()
            database_status = "ok"
        except Exception as e:
            logger.warning("Database health check failed: %s", e)
            database_status = "down"
        redis_status = get_kv_store().status()
        healthy = database_status == "ok" and redis_status == "ok"
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "version": __version__,
                "services": {"database": database_status, "redis": redis_status},
            },
        )

    return app


app = create_app()
