from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from expensegate.api.error_handling import register_exception_handlers
from expensegate.api.middleware import DEFAULT_EXEMPT_PATHS, AuthGateMiddleware
from expensegate.api.routes import router
from expensegate.logging import get_logger, set_correlation_id
from expensegate.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the API application around ``runtime`` (the process singleton by default)."""
    runtime_provider: Callable[[], Runtime] = (lambda: runtime) if runtime else get_runtime

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime_provider()
        yield
        try:
            await runtime_provider().close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="Expense Gate", version=__version__, lifespan=lifespan)
    app.state.runtime_provider = runtime_provider
    settings = runtime_provider().settings

    app.add_middleware(
        AuthGateMiddleware,
        gate_provider=lambda: runtime_provider().gate,
        exempt_paths=DEFAULT_EXEMPT_PATHS,
        trust_forwarded_for=settings.trust_forwarded_for,
    )
    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
            expose_headers=["X-Request-ID", "Retry-After"],
            max_age=3600,
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with X-Request-ID (client supplied or generated)."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> JSONResponse:
        current = runtime_provider()
        checks: Dict[str, Any] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        # Memory stores have nothing to probe
        store_probe = getattr(current.store, "verify_connection", None)
        store_ok = store_probe is None or await _run_bounded("store", store_probe)
        checks["store"] = {"status": "healthy" if store_ok else "unhealthy"}
        if current.cache is not None:
            redis_ok = await _run_bounded("redis", current.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}

        healthy = all(check["status"] == "healthy" for check in checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "version": __version__,
                "checks": checks,
            },
        )

    return app
