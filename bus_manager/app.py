"""
FastAPI application entry point for the bus manager service.
"""

from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bus_manager.config import get_settings
from bus_manager.routes import router
from bus_manager.storage import StorageError

logger = logging.getLogger(__name__)


async def _storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Storage error"})


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.add_exception_handler(StorageError, _storage_error_handler)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()


def serve() -> None:
    """Run the API under uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run(
        "bus_manager.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    serve()
