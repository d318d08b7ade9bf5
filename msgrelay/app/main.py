"""msgrelay FastAPI application.

This is the main application module that:
- Initializes the FastAPI application
- Configures middleware (CORS, exception handling)
- Registers all route handlers
- Manages application lifespan (startup/shutdown)
"""
import logging
import os
import traceback
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from msgrelay import __version__
from msgrelay.app.dependencies import get_app_state, init_app_state, validate_startup_config
from msgrelay.config.loader import ChannelRegistry, ConfigLoader
from msgrelay.core.errors import ErrorCode, InvalidRequestError, ProxyError
from msgrelay.core.key_health import SWEEP_INTERVAL_SECONDS

# Configure structured JSON logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(message)s",
)
logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid value for {name}={value!r}, using {default}")
        return default


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Handles startup initialization and shutdown cleanup for:
    - Channel configuration loading and validation
    - Key health tracking and its background sweep
    - The pooled upstream HTTP client
    """
    state = get_app_state()

    # Startup
    config_path = os.getenv("MSGRELAY_CONFIG_PATH", "config.json")
    logger.info(f"Loading configuration from {config_path}")
    loader = ConfigLoader(config_path)
    registry = ChannelRegistry(loader.load(), loader=loader)

    init_app_state(
        state,
        registry=registry,
        access_key=os.getenv("PROXY_ACCESS_KEY"),
        timeout_s=_env_float("UPSTREAM_TIMEOUT_S", 300.0),
        connect_timeout_s=_env_float("UPSTREAM_CONNECT_TIMEOUT_S", 10.0),
        sweep_interval_s=_env_float("KEY_HEALTH_SWEEP_INTERVAL_S", SWEEP_INTERVAL_SECONDS),
    )

    validation_warnings = validate_startup_config(state)
    if validation_warnings:
        logger.info(f"Configuration loaded with {len(validation_warnings)} warning(s)")

    await state.health_tracker.start_sweep_task()
    logger.info("Key health tracker initialized")

    channel = registry.current_channel()
    logger.info(
        f"msgrelay started with channel {channel.name if channel else None!r} "
        f"({channel.service_type if channel else 'none'})"
    )

    yield

    # Shutdown
    logger.info("Shutting down msgrelay...")
    if state.health_tracker:
        await state.health_tracker.stop_sweep_task()
    if state.http_client:
        await state.http_client.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="msgrelay",
        version=__version__,
        description=(
            "Messages-format reverse proxy that routes requests to native, "
            "chat-completions and generative-content upstream providers."
        ),
        lifespan=lifespan,
    )

    # Configure CORS middleware
    _configure_cors(app)

    # Register exception handlers
    _register_exception_handlers(app)

    # Register routes
    _register_routes(app)

    return app


def _configure_cors(app: FastAPI) -> None:
    """Configure CORS middleware."""
    cors_origins_env = os.getenv("CORS_ORIGINS", "*")
    if cors_origins_env == "*":
        cors_origins = ["*"]
    else:
        cors_origins = _validate_cors_origins(cors_origins_env)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )


def _validate_cors_origins(cors_origins_env: str) -> List[str]:
    """Validate and filter CORS origins.

    Args:
        cors_origins_env: Comma-separated CORS origins string

    Returns:
        List of validated CORS origins
    """
    validated_origins = []
    for origin in (o.strip() for o in cors_origins_env.split(",")):
        if not origin:
            continue
        if origin != "*" and not (origin.startswith("http://") or origin.startswith("https://")):
            logger.warning(f"Invalid CORS origin format (skipping): {origin}")
            continue
        validated_origins.append(origin)
    return validated_origins


def _register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        error = InvalidRequestError(f"Invalid request: {exc.errors()}")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        error_details = traceback.format_exc()
        logger.error(
            f"Unhandled exception: {type(exc).__name__}: {str(exc)}\n{error_details}",
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "type": "error",
                "error": {
                    "type": "api_error",
                    "code": ErrorCode.INTERNAL_ERROR.value,
                    "message": "Internal server error",
                },
            },
        )


def _register_routes(app: FastAPI) -> None:
    """Register all route handlers."""
    from msgrelay.app.routes import health, messages

    app.include_router(health.router)
    app.include_router(messages.router)


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
