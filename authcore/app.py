from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import oauth_router, router
from authcore.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so configuration errors fail fast."""
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info(
        "authcore_started",
        version=__version__,
        environment=runtime.settings.environment.value,
        store_backend=runtime.settings.store_backend.value,
    )
    yield
    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="authcore", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Take X-Request-ID from the caller or generate one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if request.url.path.startswith("/v1/") or request.url.path in ("/token", "/authorize"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(oauth_router)
    app.include_router(router)

    @app.get("/healthz")
    async def health():
        """Liveness plus a bounded store ping."""
        from authcore.service.runtime import get_runtime

        runtime = get_runtime()
        store_ok = True
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="store")
            store_ok = False
        except Exception as exc:
            logger.error("health_check_store_failed", error=str(exc))
            store_ok = False
        body: Dict[str, Any] = {
            "status": "healthy" if store_ok else "unhealthy",
            "version": __version__,
            "checks": {"store": {"status": "ok" if store_ok else "error"}},
        }
        return JSONResponse(status_code=200 if store_ok else 503, content=body)

    return app


app = create_app()
