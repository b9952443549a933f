"""Entry point for DoItTimer - focus sessions, pomodoro and task sync."""

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from uuid import uuid4

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import default_config, get_config, load_config, set_config
from database import create_db_and_tables
from services.error_handler import ServiceError, log_service_error, map_error
from services.focus_sessions import KeyedLocks
from services.logging_utils import configure_logging
from services.realtime import ChangeFeed

# Initial basic logging setup (will be reconfigured after config load)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _ensure_config():
    """Ensure config is loaded, using environment variables if needed.

    This is needed because uvicorn with reload=True spawns a new process
    that reimports the module without running main().
    """
    try:
        get_config()
    except RuntimeError:
        config_path = os.environ.get("DOITTIMER_CONFIG_PATH")
        if config_path:
            set_config(load_config(config_path))
        else:
            logger.warning("DOITTIMER_CONFIG_PATH not set; using default configuration")
            set_config(default_config())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    _ensure_config()
    config = get_config()
    configure_logging(level=config.logging.level, format_str=config.logging.format)
    logger.info("DoItTimer starting up...")

    create_db_and_tables()

    yield

    logger.info(
        f"DoItTimer shutting down ({app.state.change_feed.published} realtime changes published)"
    )


app = FastAPI(
    title="DoItTimer",
    description="Focus sessions with server-side pomodoro, a daily queue and Notion sync",
    version="0.1.0",
    lifespan=lifespan,
)

# Process-wide realtime feed and per-session pomodoro locks
app.state.change_feed = ChangeFeed()
app.state.session_locks = KeyedLocks()


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Tag every request with an id (echoed when the caller sent one)."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def _error_response(request: Request, status_code: int, body: dict) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    headers = {REQUEST_ID_HEADER: request_id} if request_id else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


# Exception handlers
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    """Render service errors as ``{success: false, code, message, ...}``."""
    if exc.status_code >= 500:
        mapped = log_service_error(
            f"api.{request.method.lower()}.{request.url.path.strip('/').replace('/', '.')}",
            exc,
            user_id=request.headers.get("X-User-Id"),
            request_id=getattr(request.state, "request_id", None),
        )
    else:
        logger.info(f"{request.method} {request.url.path} - {exc.code}: {exc.message}")
        mapped = map_error(exc)
    return _error_response(request, mapped.status_code, mapped.to_response())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with detailed messages."""
    logger.warning(f"Validation error: {exc}")
    return _error_response(
        request,
        422,
        {
            "success": False,
            "code": "validation_error",
            "message": "Invalid request data.",
            "retryable": False,
            "details": jsonable_errors(exc),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Catch-all handler for unexpected errors."""
    mapped = log_service_error(
        "api.unhandled",
        exc,
        user_id=request.headers.get("X-User-Id"),
        request_id=getattr(request.state, "request_id", None),
        extra={"path": request.url.path},
    )
    return _error_response(request, mapped.status_code, mapped.to_response())


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# API routers
from api.dashboard import router as dashboard_router
from api.data import router as data_router
from api.events import router as events_router
from api.notion import router as notion_router
from api.queue import router as queue_router
from api.sessions import router as sessions_router
from api.settings import router as settings_router
from api.tasks import projects_router, router as tasks_router

app.include_router(sessions_router)
app.include_router(tasks_router)
app.include_router(projects_router)
app.include_router(queue_router)
app.include_router(settings_router)
app.include_router(dashboard_router)
app.include_router(notion_router)
app.include_router(data_router)
app.include_router(events_router)


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="doittimer",
        description="Focus sessions with server-side pomodoro, a daily queue and Notion sync",
    )
    parser.add_argument(
        "config",
        type=Path,
        help="Path to TOML configuration file (e.g., doittimer.toml)",
    )
    parser.add_argument(
        "--no-reload",
        action="store_true",
        help="Disable auto-reload",
    )
    return parser.parse_args()


def main() -> None:
    """Main entry point."""
    args = parse_args()

    if not args.config.exists():
        print(f"Error: Config file not found: {args.config}", file=sys.stderr)
        sys.exit(1)

    config = load_config(args.config)
    set_config(config)

    # Configure logging early
    configure_logging(level=config.logging.level, format_str=config.logging.format)

    # Set environment variable for uvicorn reload subprocess
    os.environ["DOITTIMER_CONFIG_PATH"] = str(args.config.resolve())

    logger.info(f"Starting DoItTimer server on {config.server.host}:{config.server.port}")
    logger.info(f"Database: {config.database.url}")
    logger.info(f"Logging level: {config.logging.level}")

    uvicorn.run(
        "main:app",
        host=config.server.host,
        port=config.server.port,
        reload=not args.no_reload,
    )


if __name__ == "__main__":
    main()
