import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import Settings, settings as default_settings
from logging_utils import setup_logging, log_event
from pipeline.errors import FaceSearchError, SearchFailed, error_response
from services.face_search import FaceSearchService
from services.search_api import router as search_router

setup_logging()

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None,
               search_service: Optional[FaceSearchService] = None) -> FastAPI:
    """
    Build the API app.

    Without ``search_service`` the embedding gate, index client and archive
    are created in the lifespan (one gate per process) and closed on shutdown.
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.search_service is None
        if owned:
            app.state.search_service = FaceSearchService.from_settings(settings)
            try:
                await app.state.search_service.index.ensure_collection()
            except Exception as e:
                logger.warning(f"Qdrant collection check failed: {e}")
        log_event("startup", collection=settings.QDRANT_COLLECTION,
                  embedding_concurrency=settings.EMBEDDING_CONCURRENCY,
                  embedding_timeout_ms=settings.EMBEDDING_TIMEOUT_MS)
        try:
            yield
        finally:
            if owned:
                await app.state.search_service.aclose()
                app.state.search_service = None

    app = FastAPI(title="face-search", lifespan=lifespan)
    app.state.settings = settings
    app.state.search_service = search_service

    cors_origins = settings.cors_origins.split(",") if settings.cors_origins != "*" else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FaceSearchError)
    async def face_search_error_handler(request: Request, exc: FaceSearchError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.error_code} {exc.details}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.error_code}: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=error_response(exc))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                            content=error_response(SearchFailed()))

    @app.get("/healthz")
    def healthz():
        return {"status": "healthy", "service": "face-search"}

    app.include_router(search_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=default_settings.api_host,
        port=default_settings.api_port,
        reload=default_settings.api_reload,
    )
