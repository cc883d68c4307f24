"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coinvalue.api.deps import AppState, api_key_middleware
from coinvalue.api.routes import router
from coinvalue.core.config import CoinValueConfig, load_config
from coinvalue.core.exceptions import (
    CoinValueError,
    ConfigError,
    StorageError,
    ValidationError,
)
from coinvalue.service import ValuationService


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup/shutdown lifecycle."""
    config = app.state._pending_config or load_config()
    service = await ValuationService.create(config)

    app.state.app_state = AppState(config=config, service=service, jobs={})

    yield

    await service.close()


def create_app(config: CoinValueConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    import coinvalue

    app = FastAPI(
        title="CoinValue API",
        description="Collectible coin valuation, forecasting and feedback",
        version=coinvalue.__version__,
        lifespan=lifespan,
    )

    # Stash config so lifespan can retrieve it
    app.state._pending_config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if config and config.api.api_key:
        app.middleware("http")(api_key_middleware)

    app.include_router(router, prefix="/api")

    @app.exception_handler(CoinValueError)
    async def coinvalue_exception_handler(request: Request, exc: CoinValueError):
        status_map = {
            ValidationError: 422,
            ConfigError: 400,
            StorageError: 503,
        }
        status = status_map.get(type(exc), 500)
        return JSONResponse(
            status_code=status,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    return app
