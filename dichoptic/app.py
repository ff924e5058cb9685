from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dichoptic.api.error_handling import register_exception_handlers
from dichoptic.api.routes import router
from dichoptic.config import get_settings
from dichoptic.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from dichoptic.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(
        title="Dichoptic Training API", version=__version__, lifespan=lifespan
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @application.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag the request with X-Request-ID (client-supplied or generated)."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @application.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(application)
    application.include_router(router)

    @application.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Liveness plus a bounded probe of the database and Redis."""
        from dichoptic.service.runtime import get_runtime

        runtime = get_runtime()
        checks: Dict[str, str] = {}

        async def _probe(label: str, func) -> None:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                checks[label] = "healthy"
            except asyncio.TimeoutError:
                logger.error("health_check_timeout", component=label)
                checks[label] = "unhealthy"
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
                checks[label] = "unhealthy"

        if hasattr(runtime.store, "verify_connection"):
            await _probe("database", runtime.store.verify_connection)
        else:
            checks["database"] = "memory"
        if runtime.cache is not None:
            await _probe("redis", runtime.cache.verify_connection)
        else:
            checks["redis"] = "not_configured"

        status = "ok" if "unhealthy" not in checks.values() else "degraded"
        return {"status": status, "checks": checks, "version": __version__}

    return application


app = create_app()
