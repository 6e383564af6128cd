"""FastAPI application for ProductSense."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from product_sense import __version__
from product_sense.api import router
from product_sense.db import init_db
from product_sense.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    ProductSenseError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins
_ERROR_STATUS: tuple[tuple[type[ProductSenseError], int], ...] = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    await init_db()
    yield


app = FastAPI(
    title="ProductSense",
    description="Product identification and matching from photos",
    version=__version__,
    lifespan=lifespan,
)
app.include_router(router)


@app.exception_handler(ProductSenseError)
async def product_sense_error_handler(request: Request, exc: ProductSenseError) -> JSONResponse:
    """Map domain errors to HTTP status codes."""
    code = next(
        (code for error_cls, code in _ERROR_STATUS if isinstance(exc, error_cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    else:
        logger.info("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}
