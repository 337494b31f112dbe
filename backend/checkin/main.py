import logging
from contextlib import asynccontextmanager
from pathlib import Path

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware

from checkin.api.v1.api import api_router
from checkin.api.v1.endpoints import relay
from checkin.core.component_provider import initialize_components, shutdown_components
from checkin.core.config import settings
from checkin.core.database import db_factory
from checkin.core.exceptions import CheckinError, InternalError
from checkin.middleware.request_id import RequestIdMiddleware
from checkin.middleware.request_size import RequestSizeMiddleware

# Configure standard logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(message)s",
)
if settings.LOG_FILE:
    Path(settings.LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(settings.LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    logging.getLogger().addHandler(file_handler)

sql_log_level = getattr(logging, settings.SQL_LOG_LEVEL.upper(), logging.WARNING)
for name in ("sqlalchemy.engine", "sqlalchemy.pool", "sqlalchemy.dialects", "sqlalchemy.orm"):
    logging.getLogger(name).setLevel(sql_log_level)

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer() if settings.APP_ENV == "dev" else structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, wire the services, and tear them down on exit."""
    try:
        await db_factory.init_db()
        logger.info("Database initialized", database_url=db_factory.engine.url.render_as_string(hide_password=True))
        await initialize_components()
        logger.info("Services started", env=settings.APP_ENV)
        yield
    except Exception as e:
        logger.error("Error during startup", error=str(e))
        raise
    finally:
        await shutdown_components()
        await db_factory.dispose()
        logger.info("Database connection closed")


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    lifespan=lifespan,
    docs_url=f"{settings.API_V1_PREFIX}/docs",
)


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        logger.info("Request received", method=request.method, path=request.url.path)
        response = await call_next(request)
        logger.info("Response sent", path=request.url.path, status_code=response.status_code)
        return response


# Added innermost first: CORS ends up outermost
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestSizeMiddleware, max_size=settings.MAX_REQUEST_SIZE)
app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_METHODS,
    allow_headers=settings.CORS_HEADERS,
    expose_headers=settings.CORS_EXPOSE_HEADERS,
    max_age=settings.CORS_MAX_AGE,
)

app.include_router(api_router)
app.include_router(relay.router)


@app.exception_handler(CheckinError)
async def checkin_exception_handler(request: Request, exc: CheckinError):
    log = logger.error if exc.status_code >= 500 else logger.info
    log("Request failed", path=request.url.path, error=exc.code, status_code=exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.code},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    logger.info("Request validation failed", path=request.url.path, errors=len(errors))
    return JSONResponse(
        status_code=422,
        content={"detail": errors, "error": "request_validation_error"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception", path=request.url.path, error=str(exc), exception_type=type(exc).__name__)
    error = InternalError("Internal server error")
    return JSONResponse(
        status_code=error.status_code,
        content={"detail": error.message, "error": error.code},
    )


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


# Mounted last so API routes take precedence
if settings.STATIC_DIR and Path(settings.STATIC_DIR).is_dir():
    app.mount("/", StaticFiles(directory=settings.STATIC_DIR, html=True), name="static")
