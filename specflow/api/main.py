"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from specflow.api.routes import router
from specflow.config import get_settings
from specflow.container import Container
from specflow.errors import ExternalServiceError, InvalidTransitionError, NotFoundError, ValidationError


# Configure logging
logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(container: Container | None = None) -> FastAPI:
    """Create the application.

    With ``container`` the caller owns the services and their lifetime;
    otherwise they are built from settings and managed by the lifespan.
    """
    settings = container.settings if container is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info(f"Starting {settings.app_name} v{settings.app_version}")

        owned = getattr(app.state, "container", None) is None
        if owned:
            app.state.container = Container.build(settings)
            await app.state.container.start()
            logger.info("Services started")

        yield

        logger.info("Shutting down...")
        if owned:
            await app.state.container.close()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Specflow API - conversational planning and sandboxed implementation",
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-workflow-run-id", "x-thread-id"],
    )

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def invalid(request: Request, exc: ValidationError) -> JSONResponse:
        code = status.HTTP_409_CONFLICT if isinstance(exc, InvalidTransitionError) else status.HTTP_400_BAD_REQUEST
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    @app.exception_handler(ExternalServiceError)
    async def upstream_failed(request: Request, exc: ExternalServiceError) -> JSONResponse:
        logger.error(f"Upstream failure: {exc}")
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})

    app.include_router(router, prefix="/api")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "specflow.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
