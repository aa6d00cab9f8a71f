from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes.books import router as books_router
from api.routes.books import sections_router
from api.routes.imports import router as imports_router
from api.routes.reader import router as reader_router
from api.routes.storage import router as storage_router
from epub_reader.errors import (
    InvalidTransitionError,
    NotAuthenticatedError,
    NotAuthorizedError,
    NotFoundError,
)
from epub_reader.logging_setup import setup_logging

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (NotAuthenticatedError, 401),
    (NotAuthorizedError, 403),
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (ValueError, 400),
)


def _register_error_handlers(app: FastAPI) -> None:
    for error_type, status_code in _STATUS_BY_ERROR:

        def handler(request: Request, exc: Exception, status_code: int = status_code) -> JSONResponse:
            if status_code >= 403:
                logger.info("%s %s -> %d: %s", request.method, request.url.path, status_code, exc)
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})

        app.add_exception_handler(error_type, handler)


def create_app() -> FastAPI:
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    app = FastAPI(title="EPUB Reader API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)

    app.include_router(imports_router)
    app.include_router(storage_router)
    app.include_router(books_router)
    app.include_router(sections_router)
    app.include_router(reader_router)

    @app.get("/healthz")
    def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
