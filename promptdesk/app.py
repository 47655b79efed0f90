"""promptdesk HTTP application.

Builds the FastAPI app that exposes every configured table as a REST
resource (see :mod:`promptdesk.routes`) plus two operational endpoints:

========  ==================  =============================================
Method    Path                Purpose
========  ==================  =============================================
GET       ``/api/health``     liveness, no database access
GET       ``/api/db-test``    round-trip ``SELECT NOW()`` through the pool
========  ==================  =============================================

Every error response has the shape ``{"error": "<message>"}``.

Usage
-----
CLI (installed entry point)::

    promptdesk

Direct invocation::

    python -m promptdesk.app
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version

from fastapi import APIRouter, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from promptdesk.config import Settings, get_settings
from promptdesk.errors import ResourceError
from promptdesk.psql_client import PSQLClient
from promptdesk.resource_engine import ResourceRegistry, error_message
from promptdesk.routes import create_resource_router
from promptdesk.schema_inspector import SchemaInspector

logger = logging.getLogger(__name__)

try:
    __version__ = version("promptdesk")
except PackageNotFoundError:
    __version__ = "0.0.0"


def open_client(settings: Settings) -> PSQLClient:
    return PSQLClient.get(
        database=settings.db_name,
        user=settings.db_user,
        password=settings.db_password,
        host=settings.db_host,
        port=settings.db_port,
        minconn=settings.db_minconn,
        maxconn=settings.db_maxconn,
    )


def build_registry(client: PSQLClient, settings: Settings) -> ResourceRegistry:
    schema = settings.db_schema
    inspector = SchemaInspector(client, default_schema=schema, ttl_seconds=settings.schema_cache_ttl)
    return ResourceRegistry(
        client,
        settings.resource_names,
        schema=None if schema == "public" else schema,
        inspector=inspector,
        default_owner_id=settings.default_owner_id,
        search_columns=settings.search_columns,
    )


# ---------------------------------------------------------------------------
# Error rendering.
# ---------------------------------------------------------------------------


async def _resource_error(request: Request, exc: ResourceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(str(e.get("msg", e)) for e in exc.errors())
    return JSONResponse(status_code=400, content={"error": f"Invalid request: {details}"})


async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": str(exc)})


# ---------------------------------------------------------------------------
# Operational endpoints.
# ---------------------------------------------------------------------------

system_router = APIRouter(prefix="/api", tags=["system"])


@system_router.get("/health")
def health() -> dict:
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@system_router.get("/db-test")
def db_test(request: Request):
    try:
        rows = request.app.state.client.execute_query("SELECT NOW() AS now")
    except Exception as exc:
        logger.error("Database connection error: %s", exc)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Database connection failed",
                "details": error_message(exc),
                "hint": "Ensure PostgreSQL is running and the DB_* settings are correct",
            },
        )
    return jsonable_encoder(rows[0] if rows else {})


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None, client: PSQLClient | None = None) -> FastAPI:
    """Build the application.

    Args:
        settings: Configuration; defaults to :func:`get_settings`.
        client: An existing database client. When omitted, one is opened on
            startup from ``settings`` and closed on shutdown.

    Returns:
        The FastAPI app with one router per configured resource.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = client is None
        db = open_client(settings) if owned else client
        app.state.client = db
        try:
            app.state.registry = build_registry(db, settings)
        except Exception:
            if owned:
                db.close()
            raise
        logger.info("Serving %s resources", len(app.state.registry))

        yield

        if owned:
            db.close()
            logger.info("Connection pool closed on shutdown.")

    app = FastAPI(
        title="promptdesk",
        description="REST access to prompts, characters and gallery tables.",
        version=__version__,
        lifespan=lifespan,
    )

    # The front end is served from a different port during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ResourceError, _resource_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.add_exception_handler(Exception, _unexpected_error)

    app.include_router(system_router)
    for name in settings.resource_names:
        app.include_router(create_resource_router(name))

    return app


def main() -> None:
    """Launch the uvicorn ASGI server on ``HOST``:``PORT``.

    Registered as the ``promptdesk`` console script in ``pyproject.toml``.
    """
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "promptdesk.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
