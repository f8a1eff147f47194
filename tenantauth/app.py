from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tenantauth.api.error_handling import register_exception_handlers, service_unavailable_response
from tenantauth.api.gate import AuthorizationGate
from tenantauth.api.pages import pages
from tenantauth.api.routes import router
from tenantauth.logging import get_logger, set_correlation_id
from tenantauth.service.errors import ConfigurationError

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving; a bad configuration stops start-up."""
    from tenantauth.service.runtime import clear_runtime, get_runtime

    try:
        get_runtime()
    except ConfigurationError as exc:
        logger.error("startup_configuration_error", message=exc.message)
        raise
    logger.info("startup_complete", version=__version__)

    yield

    clear_runtime()
    logger.info("runtime_cleanup_complete")


def create_app() -> FastAPI:
    app = FastAPI(title="tenantauth", version=__version__, lifespan=lifespan)

    # Registration order matters: the last registered middleware runs first.
    app.middleware("http")(AuthorizationGate())

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag the request with X-Request-ID (client supplied or generated)."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Tenant-ID", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(pages)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        from tenantauth.service.runtime import get_runtime

        try:
            runtime = get_runtime()
        except ConfigurationError:
            return service_unavailable_response()
        return {
            "status": "ok",
            "version": __version__,
            "store": "memory" if runtime.settings.use_memory_store else "postgres",
        }

    return app


app = create_app()
