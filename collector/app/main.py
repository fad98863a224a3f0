from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from fleet_agent.observability import configure_logging

from .config import Settings, settings as global_settings
from .routes.admin import router as admin_router
from .routes.locations import router as locations_router
from .routes.operators import router as operators_router


logger = logging.getLogger("fleetwatch.collector")


def create_app(_settings: Settings | None = None) -> FastAPI:
    # Tests inject a Settings object without reloading modules.
    settings = _settings or global_settings

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        configure_logging(level=settings.log_level, log_format=settings.log_format, service_name="fleet-collector")
        logger.info("collector started env=%s admin_routes=%s", settings.app_env, settings.enable_admin_routes)
        yield

    docs_url = "/docs" if settings.enable_docs else None
    openapi_url = "/openapi.json" if settings.enable_docs else None

    app = FastAPI(
        title="Fleet Telemetry Collector (development)",
        lifespan=lifespan,
        docs_url=docs_url,
        redoc_url=None,
        openapi_url=openapi_url,
    )

    @app.get("/healthz", include_in_schema=False)
    async def healthz():
        return {"ok": True, "env": settings.app_env, "admin_routes": bool(settings.enable_admin_routes)}

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        # Preserve explicit error envelopes when callers supply them.
        payload: dict[str, Any]
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            payload = exc.detail
        else:
            payload = {"error": {"code": "HTTP_ERROR", "message": str(exc.detail)}}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=dict(exc.headers or {}))

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "details": exc.errors(),
                }
            },
        )

    app.include_router(locations_router)
    app.include_router(operators_router)

    # Admin surface (drives shifts during development)
    if settings.enable_admin_routes:
        app.include_router(admin_router)
    else:
        logger.info("Admin routes disabled (ENABLE_ADMIN_ROUTES=false)")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=global_settings.host, port=global_settings.port)
