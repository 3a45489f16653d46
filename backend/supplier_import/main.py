"""FastAPI application bootstrap."""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from supplier_import.api.routers import health, imports, jobs, mappings
from supplier_import.core.config import get_settings
from supplier_import.core.errors import (
    ChunkTransportError,
    ImportPipelineError,
    InvalidJobTransition,
    JobNotFoundError,
)

ERROR_STATUS = (
    (JobNotFoundError, 404),
    (InvalidJobTransition, 409),
    (ChunkTransportError, 502),
)

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app() -> FastAPI:
    """Instantiate the FastAPI app and include top-level routers."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title=settings.app_name, version="0.1.0")

    logger.info(f"[CORS] Allowed origins: {settings.cors_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    @app.exception_handler(ImportPipelineError)
    async def pipeline_error_handler(request: Request, exc: ImportPipelineError) -> JSONResponse:
        status_code = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 400)
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    app.include_router(health.router)
    app.include_router(imports.router, prefix="/api/imports", tags=["imports"])
    app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])
    app.include_router(mappings.router, prefix="/api", tags=["mappings"])

    return app


app = create_app()
