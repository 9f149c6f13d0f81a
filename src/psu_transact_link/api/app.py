"""FastAPI application factory"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..config import AppConfig
from ..errors import LinkError
from .routes import router
from .schemas import envelope
from .services import Services, build_services


logger = logging.getLogger(__name__)


def create_app(cfg: AppConfig, *, services: Optional[Services] = None) -> FastAPI:
    owns_store = services is None
    services = services or build_services(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.registry.start_sweeper()
        logger.info("API ready (prefix=%s, %d bearer token(s) configured)", cfg.api.prefix, len(cfg.api.tokens))
        yield
        # Closes every parked browser.
        await services.registry.stop()
        if owns_store:
            services.store.close()

    app = FastAPI(
        title="PSU Transact Link",
        description="Link a Penn State Transact account and sync campus-card transactions",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(LinkError)
    async def _link_error_handler(request: Request, exc: LinkError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.warning("Request failed (%s %s): %s", request.method, request.url.path, exc.kind, exc_info=exc)
        data = {"requiresRestart": True} if exc.kind == "requires_restart" else None
        return JSONResponse(
            status_code=exc.http_status,
            content=jsonable_encoder(envelope(False, exc.message, data=data, error=exc.kind)),
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder(envelope(False, str(exc.detail), error="http_error")),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonable_encoder(
                envelope(False, f"Invalid request: {', '.join(f for f in fields if f) or 'body'}", error="validation_error")
            ),
        )

    @app.exception_handler(Exception)
    async def _fallback_handler(request: Request, exc: Exception) -> JSONResponse:
        # No stack traces cross the boundary; they go to the log.
        logger.error("Unhandled error (%s %s)", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=jsonable_encoder(envelope(False, "Internal server error", error="internal_error")),
        )

    app.include_router(router, prefix=cfg.api.prefix)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "ok", "activeSessions": len(services.registry)}

    return app
