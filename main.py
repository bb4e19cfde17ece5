import logging
import time
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from credilife.api.loan_routes import router as loan_router
from credilife.api.notification_routes import router as notification_router
from credilife.api.settings_routes import router as settings_router
from credilife.core.config import settings, describe_settings
from credilife.core.dependencies import get_marker_store, get_scheduler, get_template_registry, get_template_repository
from credilife.core.exceptions import ConfigurationError, CrediLifeError, PersistenceError
from credilife.core.logging_config import setup_logging
from credilife.database.connection import init_db

setup_logging()
logger = logging.getLogger("credilife.server")

DEV_ORIGINS = ["http://localhost:3000", "http://localhost:3001"]


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Logs one line per request with its status and duration, and echoes the duration in a header."""

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.1f}"
        if request.method != "OPTIONS":
            logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f} ms)")
        return response


def parse_allowed_origins(raw: Optional[str]) -> List[str]:
    """CLIENT_URL may hold several comma-separated origins; local dev origins are always allowed alongside localhost."""
    origins = [o.strip() for o in (raw or "").split(",") if o.strip()]
    if not origins or any("localhost" in o for o in origins):
        origins = sorted(set(origins) | set(DEV_ORIGINS))
    return origins


async def load_templates() -> None:
    """Register stored message templates; the built-in defaults cover anything missing."""
    try:
        records = await get_template_repository().find_active()
    except (ConfigurationError, PersistenceError) as e:
        logger.warning(f"Could not load notification templates, using defaults: {e}")
        return
    get_template_registry().load_records(records)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting with settings: {describe_settings()}")
    if settings.NOTIFICATION_LOG_BACKEND == "mongo":
        await init_db()
    await load_templates()

    scheduler = get_scheduler()
    if settings.SCHEDULER_AUTOSTART:
        await scheduler.start()
    yield
    await scheduler.shutdown()
    markers = get_marker_store()
    if markers is not None:
        await markers.close()


app = FastAPI(
    title="CrediLife Loan Back Office",
    description="Repayment schedules and automated payment reminders",
    version="1.0.0",
    lifespan=lifespan
)


def _error_response(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    error = {"code": code, "message": message, "status_code": status_code}
    if details is not None:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error})


@app.exception_handler(HTTPException)
async def http_error(request: Request, exc: HTTPException):
    logger.warning(f"{request.method} {request.url.path} failed with {exc.status_code}: {exc.detail}")
    message = str(exc.detail) if exc.detail else f"HTTP {exc.status_code}"
    return _error_response(exc.status_code, "http_error", message)


@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError):
    # Only loc/msg/type go back to the client; raw input values may hold contact details
    details = [
        {"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    logger.warning(f"Invalid request to {request.url.path}: {len(details)} error(s)")
    return _error_response(422, "validation_error", "Request validation failed", details)


@app.exception_handler(CrediLifeError)
async def domain_error(request: Request, exc: CrediLifeError):
    if isinstance(exc, ConfigurationError):
        status_code = 503
    elif isinstance(exc, PersistenceError):
        status_code = 502
    else:
        status_code = 400
    logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return _error_response(status_code, type(exc).__name__, str(exc))


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=exc)
    return _error_response(500, "internal_server_error", "An unexpected error occurred")


allowed_origins = parse_allowed_origins(settings.CLIENT_URL)
logger.info(f"CORS allowed origins: {allowed_origins}")

# Last added runs first, so CORS answers preflights before the timing middleware
app.add_middleware(RequestTimingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Origin"],
    expose_headers=["Content-Type", "X-Process-Time-Ms"],
    max_age=3600,
)

app.include_router(loan_router)
app.include_router(notification_router)
app.include_router(settings_router)


@app.get("/")
async def root():
    return {"message": "CrediLife back office API is running!"}


@app.get("/health")
async def health_check(scheduler=Depends(get_scheduler)):
    return {"status": "healthy", "scheduler_running": scheduler.running}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
