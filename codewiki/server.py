"""FastAPI application for the code ingestion and search service."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request

from codewiki.config import Settings, get_settings
from codewiki.errors import (
    CodeWikiError,
    ConcurrencyConflictError,
    EmbeddingProviderError,
    InvalidTransitionError,
    NotIndexedError,
    RepoNotFoundError,
    TransientStoreError,
    ValidationError,
)
from codewiki.models import HealthResponse
from codewiki.routes import repos, search
from codewiki.services import Services, build_services, describe

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Configure logging for the server."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


# Error type -> HTTP status
ERROR_STATUS = [
    (ValidationError, 400),
    (RepoNotFoundError, 404),
    (ConcurrencyConflictError, 409),
    (NotIndexedError, 409),
    (EmbeddingProviderError, 502),
    (TransientStoreError, 502),
    (InvalidTransitionError, 500),
]


def status_for(error: CodeWikiError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        settings: Configuration (defaults to environment settings)
        services: Prebuilt service graph; built from settings on startup if omitted
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or build_services(settings)
        await app.state.services.start()
        logger.info(f"CodeWiki API ready ({', '.join(describe(app.state.services))})")
        try:
            yield
        finally:
            await app.state.services.close()

    app = FastAPI(title="CodeWiki API", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=settings.get_cors_origins_list(),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CodeWikiError)
    async def handle_codewiki_error(request: Request, exc: CodeWikiError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return error_response(status_code, str(exc))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ()) if p != 'body')}: {e.get('msg')}" for e in errors
        )
        return error_response(400, message or "Invalid request")

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(status="ok")

    app.include_router(repos.router)
    app.include_router(search.router)
    return app
