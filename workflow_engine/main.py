"""
Main FastAPI Application Entry Point
"""

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import traceback

from workflow_engine.config import settings
from workflow_engine.database import SessionLocal, init_db, health_check as database_health_check
from workflow_engine.exceptions import WorkflowEngineError
from workflow_engine.routers import batches, config, queue

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(f"Starting {settings.APP_NAME}")

    try:
        init_db()
    except Exception as e:
        logger.error(f"Failed to create database tables: {e}")

    from workflow_engine.services.config_service import ConfigService, EngineConfig
    from workflow_engine.services.batch_coordinator import build_batch_coordinator, set_batch_coordinator

    engine_config = EngineConfig()
    db = SessionLocal()
    try:
        config_service = ConfigService(db)
        config_service.initialize_defaults()
        engine_config = EngineConfig.from_config_service(config_service)
        logger.info("Configuration initialized")
    except Exception as e:
        logger.error(f"Failed to initialize configuration: {e}")
    finally:
        db.close()

    set_batch_coordinator(build_batch_coordinator(engine_config))

    if settings.WORKER_POOL_ENABLED:
        try:
            from workflow_engine.services.worker_pool import start_worker_pool
            await start_worker_pool()
        except Exception as e:
            logger.error(f"Failed to start worker pool: {e}")
    else:
        logger.info("Worker pool disabled (WORKER_POOL_ENABLED=false)")

    yield

    from workflow_engine.services.worker_pool import stop_worker_pool
    await stop_worker_pool()
    logger.info(f"Shutting down {settings.APP_NAME}")


app = FastAPI(
    title=settings.APP_NAME,
    description="Bounded, retrying, resumable execution of image generation batches",
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)


@app.exception_handler(WorkflowEngineError)
async def engine_error_handler(request: Request, exc: WorkflowEngineError):
    """Engine errors that escaped a router: report the error code, never the stack."""
    logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Engine error", "code": exc.code, "path": str(request.url.path)}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log unhandled exceptions with their trace and return a JSON 500."""
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path}: {exc}\n{traceback.format_exc()}"
    )
    if isinstance(exc, HTTPException):
        raise exc

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error_type": type(exc).__name__,
            "message": str(exc) if settings.DEBUG else "An unexpected error occurred",
            "path": str(request.url.path),
        }
    )


# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)

app.include_router(batches.router, prefix="/api/batches", tags=["Batches"])
app.include_router(config.router, prefix="/api/config", tags=["Configuration"])
app.include_router(queue.router, tags=["Queue Management"])


@app.get("/health")
async def health_check():
    """Simple health check for load balancers."""
    return {
        "status": "healthy" if database_health_check() else "degraded",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("workflow_engine.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
