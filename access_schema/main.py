"""FastAPI main application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from access_schema.core.config import settings
from access_schema.core.container import AccessSchema, get_access_schema
from access_schema.core.middleware import setup_middleware
from access_schema.core.rate_limiter import limiter, rate_limit_exceeded_handler
from access_schema.core.exceptions import AccessSchemaError, StorageError, http_status_for

from access_schema.api.roles import router as roles_router
from access_schema.api.assignments import router as assignments_router
from access_schema.api.checks import router as checks_router
from access_schema.api.admin import router as admin_router

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("access_schema")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting %s API %s", settings.APP_NAME, settings.VERSION)
    if get_access_schema().cache.health_check():
        logger.info("Redis connected")
    else:
        logger.warning("Redis not available, running without cache")

    yield

    logger.info("Shutting down %s API", settings.APP_NAME)


app = FastAPI(
    title="accessSchema API",
    description="Hierarchical role-based access control",
    version=settings.VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Middleware
setup_middleware(app)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(AccessSchemaError)
async def access_schema_exception_handler(request: Request, exc: AccessSchemaError):
    status_code = http_status_for(exc)
    if isinstance(exc, StorageError):
        logger.error("Storage failure on %s: %s", request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message},
    )

# Register routers
app.include_router(roles_router, prefix="/api/v1")
app.include_router(assignments_router, prefix="/api/v1")
app.include_router(checks_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


@app.get("/")
@limiter.exempt
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.VERSION,
        "docs": "/docs",
    }


@app.get("/api/v1/health")
@limiter.exempt
async def health(schema: AccessSchema = Depends(get_access_schema)):
    """Quick health check endpoint."""
    return {
        "status": "ok",
        "cache": schema.cache.health_check(),
    }
