"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import make_url

from lnbridge.auth import IdentityProvider, get_identity_provider
from lnbridge.config import Settings, get_settings
from lnbridge.ledger.database import close_db, get_engine, get_session_factory, init_db
from lnbridge.ledger.repository import SqlSwapStore
from lnbridge.providers import (
    LightningBackend,
    SettlementBackend,
    get_lightning_backend,
    get_settlement_backend,
)
from lnbridge.swap.driver import SwapLifecycleDriver
from lnbridge.swap.errors import SwapError
from lnbridge.swap.store import InMemorySwapStore, SwapStore
from lnbridge.web.services.swap_service import SwapService

logger = logging.getLogger(__name__)


def _ensure_sqlite_dir(database_url: str) -> None:
    """Create the parent directory of a file-based SQLite database."""
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def _create_store(settings: Settings) -> SwapStore:
    backend = settings.swap_store.lower()
    if backend == "sql":
        return SqlSwapStore(get_session_factory(settings.database_url))
    if backend == "memory":
        return InMemorySwapStore()
    raise ValueError(f"Unknown swap store: {settings.swap_store}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    service: SwapService = app.state.swap_service

    # Startup
    if isinstance(service.store, SqlSwapStore):
        _ensure_sqlite_dir(settings.database_url)
        await init_db(get_engine(settings.database_url))
        logger.info("Database initialized")
    await service.resume_active()
    yield
    # Shutdown
    await service.shutdown()
    await app.state.identity.close()
    await close_db()


async def swap_error_handler(request: Request, exc: SwapError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code},
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ())[1:])
        message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"error": message, "code": "validation_error"},
    )


def create_app(
    settings: Optional[Settings] = None,
    lightning: Optional[LightningBackend] = None,
    settlement: Optional[SettlementBackend] = None,
    store: Optional[SwapStore] = None,
    identity: Optional[IdentityProvider] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators default to the ones selected by settings; tests pass
    their own.
    """
    settings = settings or get_settings()
    lightning = lightning or get_lightning_backend(settings)
    settlement = settlement or get_settlement_backend(settings)
    store = store or _create_store(settings)
    identity = identity or get_identity_provider(settings)

    driver = SwapLifecycleDriver(store, lightning, settlement, settings)

    app = FastAPI(
        title="lnbridge API",
        description="Lightning <-> Starknet swap service",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.settings = settings
    app.state.lightning = lightning
    app.state.settlement = settlement
    app.state.identity = identity
    app.state.swap_service = SwapService(driver, lightning, settings)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(SwapError, swap_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Register routes
    from lnbridge.api.routes import health
    from lnbridge.web.controllers import lightning_router

    app.include_router(health.router, tags=["Health"])
    app.include_router(lightning_router)

    return app


# Default app instance
app = create_app()
