"""
Readmind Memory Engine - Main Application Entry Point
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from readmind.config import settings
from readmind.db import init_db
from readmind.api import memory_router, documents_router, graph_router
from readmind.errors import AuthorizationError, ProviderUnavailable, StoreFailure
from readmind.logging_config import configure_logging, generate_request_id, set_request_context
from readmind.services.extraction_queue import get_extraction_queue

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    configure_logging()
    logger.info(f"{settings.app_name} starting up...")

    await init_db()

    queue = get_extraction_queue()
    await queue.start()

    yield

    logger.info("Shutting down...")
    await queue.stop()


app = FastAPI(
    title=settings.app_name,
    description="Contextual memory and knowledge-graph engine for a document reader",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or generate_request_id()
    set_request_context(request_id=request_id)
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError):
    logger.warning(f"Denied access to {exc.resource} {exc.resource_id}")
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


@app.exception_handler(ProviderUnavailable)
async def provider_unavailable_handler(request: Request, exc: ProviderUnavailable):
    logger.warning(f"Provider unavailable on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Embedding or language model provider unavailable"},
    )


@app.exception_handler(StoreFailure)
async def store_failure_handler(request: Request, exc: StoreFailure):
    logger.error(f"Store failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage temporarily unavailable"},
    )


# Include routers
app.include_router(memory_router, prefix=settings.api_prefix)
app.include_router(documents_router, prefix=settings.api_prefix)
app.include_router(graph_router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "name": settings.app_name,
        "status": "healthy",
        "version": "1.0.0",
    }


@app.get("/health")
async def health():
    """Health check with extraction queue state"""
    queue = get_extraction_queue()
    return {
        "status": "healthy",
        "extraction_queue": {"running": queue.running, **queue.stats},
    }
