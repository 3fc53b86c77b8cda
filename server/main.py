"""
Tablefill Server Main Application
FastAPI server for starting, cancelling and streaming CSV enrichment runs
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, setup_logging
from config.settings import validate_production_config
from core.exceptions import AppException, ErrorCode
from api.enrichment import close_redis, get_redis, router as enrichment_router

# Configure logging
setup_logging()
logger = logging.getLogger("tablefill_server")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan events
    """
    logger.info("Starting Tablefill Server")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Debug mode: {settings.debug}")
    if settings.environment == "production":
        validate_production_config()
    try:
        yield
    finally:
        logger.info("Shutting down Tablefill Server")
        await close_redis()


app = FastAPI(
    title="Tablefill Server",
    description="Web-search driven enrichment of missing table cells",
    version="1.0.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

if settings.enable_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

app.include_router(enrichment_router)


@app.get("/health")
async def health_check():
    """Health check: Redis is required, Ollama is reported as degraded when down"""
    services = {}
    redis_healthy = False
    try:
        redis_healthy = bool(await get_redis().ping())
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
    services["redis"] = {"status": "healthy" if redis_healthy else "unhealthy", "url": settings.redis_url}

    ollama_healthy = False
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{settings.ollama_base_url}/api/tags")
            ollama_healthy = response.status_code == 200
    except httpx.HTTPError as e:
        logger.warning(f"Ollama health check failed: {e}")
    services["ollama"] = {
        "status": "healthy" if ollama_healthy else "degraded",
        "url": settings.ollama_base_url,
        "model": settings.ollama_model
    }

    return JSONResponse(
        content={
            "status": "healthy" if redis_healthy else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": "1.0.0",
            "environment": settings.environment,
            "services": services,
            "configuration": {
                "search_provider": settings.search_provider,
                "max_cycles": settings.max_cycles,
                "crawl_concurrency": settings.crawl_concurrency
            }
        },
        status_code=200 if redis_healthy else 503
    )


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_envelope(request: Request, status_code: int, error: dict) -> JSONResponse:
    """Wrap one error in the {success, data, meta, errors} envelope used by every route"""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": None,
            "meta": {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "path": request.url.path
            },
            "errors": [error]
        }
    )


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    if exc.status_code >= 500:
        logger.error(f"[{exc.code.value}] {request.url.path}: {exc.message}")
    return _error_envelope(request, exc.status_code, exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)

    # Exception text can leak URLs and keys, so it is only echoed in debug mode
    details = {"type": type(exc).__name__}
    message = "An unexpected error occurred"
    if settings.debug:
        details["detail"] = message = str(exc)

    return _error_envelope(request, 500, {
        "code": ErrorCode.INTERNAL_ERROR.value,
        "message": message,
        "details": details
    })


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info"
    )
