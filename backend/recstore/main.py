import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .recommender import NeighborCache, SessionScorer
from .storage import (
    BackendUnavailable,
    Conflict,
    Database,
    InvalidArgument,
    NotFound,
    UnsupportedBackend,
    mask_descriptor,
    open_cache,
    open_database,
)
from .web.routes import feedback, items, recommend, users

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SLOW_REQUEST_SECONDS = 5

# Error type → HTTP status
ERROR_STATUS = [
    (InvalidArgument, 400),
    (NotFound, 404),
    (Conflict, 409),
    (BackendUnavailable, 503),
    (UnsupportedBackend, 500),
]


def _install_error_handlers(app: FastAPI):
    for error_type, status_code in ERROR_STATUS:
        def handler(request: Request, exc: Exception, status_code=status_code):
            if status_code >= 500:
                logger.error(f"{request.method} {request.url.path} failed: {exc}")
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})
        app.add_exception_handler(error_type, handler)


def create_app(database: Optional[Database] = None, cache: Optional[NeighborCache] = None) -> FastAPI:
    """
    Build the API.

    Args:
        database: Opened storage adapter. Opened from settings at startup if None.
        cache: Opened neighbor cache. Opened from settings at startup if None.

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = []
        try:
            if app.state.database is None:
                logger.info(f"Database: {mask_descriptor(settings.database_url)}")
                app.state.database = open_database(
                    settings.database_url, settings.table_prefix, settings.storage_timeout
                )
                owned.append(app.state.database)
                app.state.database.init()
            if app.state.cache is None:
                logger.info(f"Cache: {mask_descriptor(settings.cache_url)}")
                app.state.cache = open_cache(settings.cache_url, settings.storage_timeout)
                owned.append(app.state.cache)
                app.state.scorer = SessionScorer(app.state.cache, settings.neighbor_count)
            yield
        finally:
            for resource in reversed(owned):
                resource.close()

    app = FastAPI(
        title="Recstore API",
        description="Storage and session scoring for a recommendation service",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.database = database
    app.state.cache = cache
    app.state.scorer = SessionScorer(cache, settings.neighbor_count) if cache is not None else None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_slow_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        if process_time > SLOW_REQUEST_SECONDS:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} "
                f"took {process_time:.2f}s"
            )
        return response

    _install_error_handlers(app)

    app.include_router(users.router)
    app.include_router(items.router)
    app.include_router(feedback.router)
    app.include_router(recommend.router)

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "service": "recstore"}

    return app


app = create_app()
