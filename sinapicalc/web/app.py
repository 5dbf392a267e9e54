"""FastAPI application for sinapicalc."""

from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.middleware.base import BaseHTTPMiddleware

from sinapicalc.core.logging import configure_logging
from sinapicalc.db.connection import close_db
from sinapicalc.errors import CompositionNotFound, ParseStructureError, ResourceNotFound
from sinapicalc.web.routes import health, sinapi

# Initialize structured logging
configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_db()


app = FastAPI(
    title="sinapicalc",
    description="SINAPI reference ingestion and composition cost resolution",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# Request Logging Middleware
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        structlog.contextvars.clear_contextvars()

        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            logger.info("request_completed", status_code=response.status_code)
            return response
        except Exception as exc:
            logger.error("request_failed", error=str(exc))
            raise


app.add_middleware(RequestLoggingMiddleware)

# Prometheus Metrics
Instrumentator().instrument(app).expose(app)


# Exception Handlers
@app.exception_handler(CompositionNotFound)
async def composition_not_found_handler(request: Request, exc: CompositionNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ResourceNotFound)
async def resource_not_found_handler(request: Request, exc: ResourceNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ParseStructureError)
async def parse_structure_handler(request: Request, exc: ParseStructureError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# Include Routers
app.include_router(health.router)
app.include_router(sinapi.router)
