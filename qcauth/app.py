from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from qcauth.api.error_handling import register_exception_handlers
from qcauth.api.routes import router
from qcauth.config import Settings, get_settings
from qcauth.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    set_correlation_id,
)
from qcauth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts; no wildcard because credentials are allowed.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the HTTP app around an explicitly constructed runtime.

    When no runtime is given one is built from the environment. The runtime is
    closed on shutdown either way.
    """
    runtime = runtime or Runtime(get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("app_startup", redis_enabled=runtime.cache is not None)
        yield
        try:
            await runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="Control de Calidad Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(runtime.settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Accept or generate X-Request-ID, bind it for logging and echo it back."""
        clear_request_context()
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        bind_request_context(
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "version": __version__,
            "redis": "enabled" if runtime.cache is not None else "fallback",
        }

    register_exception_handlers(app)
    app.include_router(router)
    return app
