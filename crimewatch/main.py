# crimewatch/main.py
from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import RedirectResponse

from crimewatch.config import Settings, get_settings
from crimewatch.deps import Services, build_services, load_registry
from crimewatch.errors import LockTimeoutError, NotFoundError, PermissionDeniedError, ValidationError

log = logging.getLogger("uvicorn.error")


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": exc.errors})

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(PermissionDeniedError)
    async def _forbidden(request: Request, exc: PermissionDeniedError):
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(LockTimeoutError)
    async def _busy(request: Request, exc: LockTimeoutError):
        return JSONResponse(status_code=503, content={"detail": str(exc), "retry": True})


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (services.settings if services else get_settings())
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if services is None:
        services = build_services(settings)
        load_registry(services)

    app = FastAPI(
        title="CrimeWatch API",
        version="1.0.0",
        description="Backend for CrimeWatch (incidents, hotspots, alerts, neighbourhood watch).",
    )
    app.state.services = services

    # ---------------- CORS ----------------
    # Prefer explicit origins via CORS_ORIGINS="https://app.example.com,https://staging.example.com"
    # For local dev we allow any localhost/127.0.0.1 on any port.
    cors_kwargs = dict(allow_methods=["*"], allow_headers=["*"], allow_credentials=True)
    if settings.cors_origins:
        cors_kwargs.update(allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()])
    else:
        cors_kwargs.update(allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$")
    app.add_middleware(CORSMiddleware, **cors_kwargs)
    log.info("CORS configured: %s", cors_kwargs)

    _install_error_handlers(app)

    # ---------------- Routers ----------------
    # Each router owns its paths (/incidents, /hotspots, /groups ...); API_PREFIX
    # is prepended to all of them.
    from crimewatch.routes.alerts import router as alerts_router
    from crimewatch.routes.events import router as events_router
    from crimewatch.routes.groups import router as groups_router
    from crimewatch.routes.hotspots import router as hotspots_router
    from crimewatch.routes.incident import router as incident_router

    prefix = settings.api_prefix
    for router in (incident_router, hotspots_router, alerts_router, groups_router, events_router):
        app.include_router(router, prefix=prefix)

    # ---------------- Meta/utility ----------------
    @app.get("/", include_in_schema=False)
    def root() -> RedirectResponse:
        # Visiting the root opens Swagger UI
        return RedirectResponse(url="/docs")

    @app.get(f"{prefix}/health", tags=["meta"])
    def health():
        return {
            "status": "ok",
            "prefix": prefix,
            "storage": settings.storage_backend,
            "active_hotspots": services.engine.active_count(),
        }

    return app


app = create_app()

# ---------------- Local dev entrypoint ----------------
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "crimewatch.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
    )
