"""
FastAPI application entry point for the FairShare backend.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fairshare.config import get_settings
from fairshare.errors import FairShareError
from fairshare.routes import router

logger = logging.getLogger(__name__)


async def fairshare_error_handler(request: Request, exc: FairShareError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "Unhandled FairShare error in %s %s: %s",
            request.method,
            request.url.path,
            exc.message,
        )
    else:
        logger.info(
            "%s %s -> %d %s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    app = FastAPI(title="FairShare API", version=settings.version)
    app.add_exception_handler(FairShareError, fairshare_error_handler)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
