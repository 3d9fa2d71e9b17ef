from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from wayli_jobs.config.logging import setup_logging
from wayli_jobs.config.settings import settings
from wayli_jobs.v1.core.exceptions import (
    RequestContextMiddleware,
    WayliException,
    general_exception_handler,
    http_exception_handler,
    wayli_exception_handler,
)
from wayli_jobs.v1.healthz import router as health_router
from wayli_jobs.v1.infra.jobs.routes import router as jobs_router
from wayli_jobs.v1.infra.jobs.routes import workers_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    setup_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description="Background job queue and worker coordination for Wayli",
        version=settings.version,
        debug=settings.debug,
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    app.add_middleware(RequestContextMiddleware)

    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(WayliException, wayli_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(workers_router, prefix="/v1")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "wayli_jobs.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
