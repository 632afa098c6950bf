import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from hangjegyzet.api.routes import api_router
from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.core.exceptions import (
    BaseAPIException, ModeNotAvailableError, PipelineException, QuotaStoreUnavailableError,
)
from hangjegyzet.core.logging import setup_logging
from hangjegyzet.db.session import create_engine, create_session_factory, init_models
from hangjegyzet.providers.openai_enhancer import OpenAITextEnhancer
from hangjegyzet.providers.whisper_provider import WhisperProvider
from hangjegyzet.services.container import Pipeline, build_burst_limiter
from hangjegyzet.storage.sql_store import SQLPipelineStore
from hangjegyzet.utils.redis import close_redis_connection, create_redis_client


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all requests"""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id

        logger.info(f"Request {request_id}: {request.method} {request.url.path}")

        try:
            response = await call_next(request)

            process_time = time.time() - start_time
            logger.info(f"Response {request_id}: {response.status_code} completed in {process_time:.3f}s")

            response.headers["X-Process-Time"] = f"{process_time:.3f}"
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(f"Error {request_id}: {str(e)} after {process_time:.3f}s")
            raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI application.
    Builds the pipeline on startup unless one was injected, then starts the workers.
    """
    config: Settings = app.state.config
    setup_logging(config)

    pipeline: Optional[Pipeline] = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.start()
        logger.info("Application startup complete with injected pipeline")
        yield
        await pipeline.stop()
        return

    engine = create_engine(config)
    await init_models(engine)
    redis_client = await create_redis_client(config)
    provider = WhisperProvider(config)
    enhancer = OpenAITextEnhancer(config) if config.OPENAI_API_KEY else None

    pipeline = Pipeline(
        store=SQLPipelineStore(create_session_factory(engine)),
        provider=provider,
        enhancer=enhancer,
        burst_limiter=build_burst_limiter(redis_client, config),
        config=config,
    )
    app.state.pipeline = pipeline
    await pipeline.start()

    logger.info(f"Application startup complete in {config.ENVIRONMENT} environment")
    yield

    await pipeline.stop()
    await close_redis_connection(redis_client)
    await provider.close()
    if enhancer is not None:
        await enhancer.close()
    await engine.dispose()

    logger.info("Application shutdown")


def create_app(pipeline: Optional[Pipeline] = None, config: Optional[Settings] = None) -> FastAPI:
    """
    Build the API application

    Args:
        pipeline: Pre-wired pipeline; when given the lifespan only starts and stops it
        config: Settings, defaults to the environment
    """
    config = config or (pipeline.config if pipeline is not None else default_settings)

    app = FastAPI(
        title=config.PROJECT_NAME,
        description="API for mode-tiered meeting transcription",
        version=config.VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    if pipeline is not None:
        app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Type", "Content-Length", "Retry-After", "X-Process-Time", "X-Request-ID"],
        max_age=600,
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(api_router, prefix=config.API_V1_STR)

    @app.exception_handler(BaseAPIException)
    async def api_exception_handler(request: Request, exc: BaseAPIException):
        """Handle custom API exceptions"""
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "code": exc.code},
            headers=exc.headers or {},
        )

    @app.exception_handler(PipelineException)
    async def pipeline_exception_handler(request: Request, exc: PipelineException):
        """Handle validation failures raised while resolving a submission"""
        status_code = 403 if isinstance(exc, ModeNotAvailableError) else 422
        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.message, "code": exc.kind.value},
        )

    @app.exception_handler(QuotaStoreUnavailableError)
    async def quota_store_exception_handler(request: Request, exc: QuotaStoreUnavailableError):
        logger.error(f"Quota store unavailable: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": "Usage store temporarily unavailable", "code": "quota_store_unavailable"},
            headers={"Retry-After": "5"},
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "version": config.VERSION,
            "environment": config.ENVIRONMENT,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "hangjegyzet.main:app",
        host="0.0.0.0",
        port=8000,
        reload=default_settings.DEBUG,
    )
