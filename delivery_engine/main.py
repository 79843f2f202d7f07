"""FastAPI application entry point."""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from delivery_engine.api.routes import get_engine, router
from delivery_engine.config import get_settings
from delivery_engine.errors import DeliveryEngineError
from delivery_engine.state.manager import get_state_manager
from delivery_engine.utils.logging import get_logger, setup_logging

# Setup logging first
setup_logging()
logger = get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    # Startup
    logger.info("application_starting", environment=settings.environment)

    state_manager = await get_state_manager()
    logger.info("state_manager_initialized")

    sweeper_task: asyncio.Task | None = None
    if settings.sweeper_enabled:
        engine = await get_engine()
        sweeper_task = asyncio.create_task(
            engine.sweeper.run_forever(settings.sweep_interval_seconds)
        )

    yield

    # Shutdown
    logger.info("application_shutting_down")
    if sweeper_task is not None:
        sweeper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper_task
    await state_manager.disconnect()


app = FastAPI(
    title="Delivery Assignment Engine",
    description="Rider assignment and delivery lifecycle service",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DeliveryEngineError)
async def delivery_engine_error_handler(
    request: Request, exc: DeliveryEngineError
) -> JSONResponse:
    """Return engine errors as a reason string, never a stack trace."""
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message, **exc.context)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": "delivery-engine"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "message": "Delivery Assignment Engine API",
        "docs": "/docs",
        "health": "/health",
    }


app.include_router(router, prefix="/api/v1", tags=["api"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "delivery_engine.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
    )
