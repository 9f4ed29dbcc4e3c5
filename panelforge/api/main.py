"""Main FastAPI application for Panelforge."""

from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from panelforge import __version__
from panelforge.core.config import PanelforgeConfig
from panelforge.core.logging_config import get_logger, setup_logging
from panelforge.llm.provider_adapter import build_adapter
from panelforge.pipelines.executors import StageExecutors

from .routers import generation
from .sessions import SessionRegistry
from .settings import get_settings

logger = get_logger("api.main")


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Reject with the number of seconds until the window resets."""
    retry_after = int(exc.limit.limit.get_expiry())
    logger.warning(f"⚠️ Rate limit exceeded for {request.client.host if request.client else 'unknown'}")
    return JSONResponse(
        status_code=429,
        content={"error": f"Rate limit exceeded: {exc.detail}", "retryAfter": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    setup_logging(get_settings().log_level)
    logger.info("Starting Panelforge API...")
    yield
    logger.info("Shutting down Panelforge API...")


def create_app(
    config: Optional[PanelforgeConfig] = None,
    executors_factory: Optional[Callable[[], StageExecutors]] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Configuration to use; loaded from server settings if None
        executors_factory: Builds the stage executors for each new session;
            defaults to executors over the configured providers
    """
    if config is None:
        config = get_settings().load_config()

    if executors_factory is None:
        def executors_factory() -> StageExecutors:
            return StageExecutors(build_adapter(config), config.pipeline)

    app = FastAPI(
        title="Panelforge API",
        description="API for AI-powered story to comic generation",
        version=__version__,
        lifespan=lifespan,
    )

    # Add rate limiter to app state
    generation.limiter.enabled = config.server.rate_limit_enabled
    app.state.limiter = generation.limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    app.state.config = config
    app.state.sessions = SessionRegistry(config, executors_factory)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(generation.router, prefix="/api/generation", tags=["generation"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {"message": "Panelforge API", "version": __version__}

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "sessions": len(app.state.sessions)}

    return app


def start_server(host: Optional[str] = None, port: Optional[int] = None, reload: bool = False):
    """Start the FastAPI server."""
    settings = get_settings()
    config = settings.load_config()
    uvicorn.run(
        "panelforge.api.main:create_app",
        factory=True,
        host=host or config.server.host,
        port=port or config.server.port,
        reload=reload or settings.reload,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    start_server()
