"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from verifyx.api.routes import router
from verifyx.config import get_settings
from verifyx.engine import VerificationEngine, build_backend
from verifyx.errors import (
    DegenerateVectorError,
    GeometryEstimationError,
    InferenceTimeoutError,
    InferenceTransportError,
    InvalidImageError,
    LowLandmarkQualityError,
    NoFaceDetectedError,
    ShapeMismatchError,
    VerifyXError,
)
from verifyx.ml.inference import InferencePool, PoolSaturatedError

logger = logging.getLogger(__name__)

# First match wins: subclasses come before their bases.
_ERROR_STATUS: list[tuple[type[VerifyXError], int]] = [
    (InferenceTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (InferenceTransportError, status.HTTP_502_BAD_GATEWAY),
    (InvalidImageError, status.HTTP_400_BAD_REQUEST),
    (ShapeMismatchError, status.HTTP_400_BAD_REQUEST),
    (NoFaceDetectedError, 422),
    (LowLandmarkQualityError, 422),
    (GeometryEstimationError, 422),
    (DegenerateVectorError, 422),
]


def error_status(exc: VerifyXError) -> int:
    """HTTP status code for a VerifyX error."""
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _verifyx_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, VerifyXError):
        raise exc
    status_code = error_status(exc)
    if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)

    content: dict[str, object] = {"detail": str(exc)}
    if exc.result is not None:
        content["result"] = exc.result.to_dict()
    return JSONResponse(status_code=status_code, content=content)


async def _pool_saturated_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc)},
        headers={"Retry-After": "1"},
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting VerifyX (backend=%s, device=%s, max_concurrent=%s)",
        settings.inference_backend,
        settings.device,
        settings.max_concurrent,
    )

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool

    engine = VerificationEngine(build_backend(settings), settings)
    app.state.engine = engine

    logger.info("VerifyX ready")
    yield

    logger.info("Shutting down VerifyX")
    inference_pool.shutdown()
    engine.close()
    logger.info("VerifyX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="VerifyX",
        description="Face liveness, same-person and identity-document verification API",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(VerifyXError, _verifyx_error_handler)
    application.add_exception_handler(PoolSaturatedError, _pool_saturated_handler)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("verifyx.main:app", host=settings.host, port=settings.port)
