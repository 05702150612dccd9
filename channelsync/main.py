import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .config import settings
from .database import create_tables
from .routers import sync
from .services.scheduler import start_sync_scheduler, stop_sync_scheduler
from .utils.logging_config import clear_trace_context, set_trace_context, setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    setup_logging(settings.log_level, json_format=settings.log_json)
    logger.info(f"Starting channelsync ({settings.environment})")

    create_tables()

    if settings.scheduler_enabled:
        start_sync_scheduler()
    else:
        logger.info("In-process scheduler disabled; expecting an external timer")

    yield

    logger.info("Shutting down channelsync...")
    if settings.scheduler_enabled:
        stop_sync_scheduler()


app = FastAPI(
    title="channelsync",
    description="Beds24 channel-manager sync engine",
    version="0.1.0",
    lifespan=lifespan,
)


# Request ID Middleware
class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        set_trace_context(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_trace_context()
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestIdMiddleware)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", None)
    logger.error(f"[{request_id}] Unhandled error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": str(exc), "request_id": request_id},
    )


app.include_router(sync.router)


@app.get("/health")
@app.get("/health/")
async def health_check():
    return {"status": "healthy"}
