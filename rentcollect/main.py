# rentcollect/main.py
"""
FastAPI application factory for RentCollect.

- lifespan: логирование, (опционально) APScheduler, корректное закрытие пула БД.
- Middleware: CORS, лог-контекст запроса (X-Request-ID), latency-гистограмма, security headers.
- Служебные ручки: /health, /version, /metrics.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from rentcollect.core.config import settings
from rentcollect.core.db import close_db_async, health_check_db_async
from rentcollect.core.exceptions import register_exception_handlers
from rentcollect.core.logging import LoggingContextMiddleware, get_logger, setup_logging
from rentcollect.core.metrics import HTTP_REQUEST_LATENCY, render_latest
from rentcollect.routers import register_routers
from rentcollect.worker import scheduler_worker

logger = get_logger(__name__)

_STARTED_AT = time.time()


# ======================================================================================
# LIFESPAN (startup -> yield -> shutdown)
# ======================================================================================
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    setup_logging()
    logger.info("Application startup", environment=settings.ENVIRONMENT, version=settings.VERSION)
    logger.debug("Effective settings", settings=settings.dump_settings_safe())

    # автозапуск планировщика (по флагу)
    scheduler_started = False
    if settings.ENABLE_SCHEDULER:
        scheduler_worker.start()
        scheduler_started = True

    try:
        yield
    finally:
        if scheduler_started:
            scheduler_worker.stop()
        await close_db_async()
        logger.info("Application shutdown complete")


# ======================================================================================
# APP FACTORY
# ======================================================================================
def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Correlation-ID"],
        max_age=86400,
    )

    @app.middleware("http")
    async def latency_mw(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        # шаблон маршрута вместо сырого пути: без взрыва кардинальности
        route = request.scope.get("route")
        path = getattr(route, "path", None) or "unmatched"
        HTTP_REQUEST_LATENCY.labels(method=request.method, path=path).observe(time.perf_counter() - start)
        return response

    @app.middleware("http")
    async def security_headers_mw(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        return response

    # внешним слоем: контекст запроса должен быть виден всем остальным
    app.add_middleware(LoggingContextMiddleware)

    register_exception_handlers(app)
    register_routers(app)

    @app.get("/health", tags=["service"])
    async def health() -> JSONResponse:
        db = await health_check_db_async()
        body: dict[str, Any] = {
            "status": "ok" if db["ok"] else "degraded",
            "database": db,
            "scheduler": scheduler_worker.get_status(),
            "uptime_seconds": int(time.time() - _STARTED_AT),
        }
        return JSONResponse(status_code=200 if db["ok"] else 503, content=body)

    @app.get("/version", tags=["service"])
    async def version() -> dict[str, Any]:
        return settings.build_info

    @app.get("/metrics", tags=["service"])
    async def metrics() -> Response:
        return Response(content=render_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()

__all__ = ["app", "create_app", "lifespan"]
