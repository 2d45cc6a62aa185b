from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .configuration import configure_logging, make_runtime_config
from .database import Database
from .errors import NotFoundError, RenditionBackendError
from .job_queue import JobQueue, build_redis_client
from .models import (
    CompleteUploadRequest,
    CompleteUploadResponse,
    InitUploadRequest,
    InitUploadResponse,
    PartUrlRequest,
    PartUrlResponse,
    RenditionView,
    UploadSessionView,
)
from .storage import StorageGateway, build_s3_client
from .uploads import UploadSessionManager

logger = logging.getLogger(__name__)

PROBLEM_TYPES = {
    400: "https://tools.ietf.org/html/rfc7231#section-6.5.1",
    401: "https://tools.ietf.org/html/rfc7235#section-3.1",
    404: "https://tools.ietf.org/html/rfc7231#section-6.5.4",
    409: "https://tools.ietf.org/html/rfc7231#section-6.5.8",
    422: "https://tools.ietf.org/html/rfc4918#section-11.2",
    500: "https://tools.ietf.org/html/rfc7231#section-6.6.1",
    502: "https://tools.ietf.org/html/rfc7231#section-6.6.3",
    503: "https://tools.ietf.org/html/rfc7231#section-6.6.4",
}


def _problem(request: Request, status: int, title: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        media_type="application/problem+json",
        content={
            "type": PROBLEM_TYPES.get(status, "about:blank"),
            "title": title,
            "status": status,
            "detail": detail,
            "instance": request.url.path,
        },
    )


def _build_upload_manager() -> tuple[UploadSessionManager, JobQueue]:
    config = make_runtime_config()
    configure_logging(config)
    database = Database(Path(config.database.path))
    storage = StorageGateway(
        build_s3_client(config.storage),
        bucket=config.storage.bucket,
        presign_ttl=int(config.storage.presign_ttl_seconds),
    )
    queue = JobQueue(build_redis_client(config.queue), key_prefix=config.queue.key_prefix)
    return UploadSessionManager.from_config(config, database, storage, queue), queue


def create_app(upload_manager: Optional[UploadSessionManager] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        upload_manager: Prebuilt manager (tests inject doubles here). When
            omitted, clients are built from config at startup and closed at
            shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_queue: Optional[JobQueue] = None
        if getattr(app.state, "upload_manager", None) is None:
            app.state.upload_manager, owned_queue = _build_upload_manager()
        yield
        if owned_queue is not None:
            owned_queue.close()

    app = FastAPI(title="Rendition Backend API", version="0.1.0", lifespan=lifespan)
    app.state.upload_manager = upload_manager

    @app.exception_handler(RenditionBackendError)
    async def domain_error_handler(request: Request, exc: RenditionBackendError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return _problem(request, exc.status_code, exc.title, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        return _problem(request, 422, "Unprocessable Entity", messages)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _problem(request, exc.status_code, str(exc.detail), str(exc.detail))

    register_routes(app)
    return app


def get_upload_manager(request: Request) -> UploadSessionManager:
    return request.app.state.upload_manager


def get_caller_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity, established upstream by the authentication layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


def register_routes(app: FastAPI) -> None:
    @app.get("/healthz")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/uploads", response_model=InitUploadResponse)
    def init_upload(
        body: InitUploadRequest,
        caller_id: str = Depends(get_caller_id),
        manager: UploadSessionManager = Depends(get_upload_manager),
    ) -> InitUploadResponse:
        session = manager.create_session(
            target=body.target,
            file_name=body.file_name,
            mime=body.mime,
            total_size=body.total_size,
            created_by=caller_id,
            asset_id=body.asset_id,
        )
        return InitUploadResponse(
            upload_id=session.id,
            part_size=session.part_size,
            part_count=session.part_count,
            bucket=session.bucket,
            key=session.key_temp,
        )

    @app.get("/uploads/{upload_id}", response_model=UploadSessionView)
    def get_upload(
        upload_id: str,
        caller_id: str = Depends(get_caller_id),
        manager: UploadSessionManager = Depends(get_upload_manager),
    ) -> UploadSessionView:
        session = manager.get_session(upload_id)
        return UploadSessionView(
            id=session.id,
            target=session.target,
            asset_id=session.asset_id or session.result_asset_id,
            file_name=session.file_name,
            mime=session.mime,
            total_size=session.total_size,
            part_size=session.part_size,
            part_count=session.part_count,
            received_bytes=session.received_bytes,
            state=session.state,
            created_at=session.created_at,
            expires_at=session.expires_at,
        )

    @app.post("/uploads/{upload_id}/parts", response_model=PartUrlResponse)
    def request_part_url(
        upload_id: str,
        body: PartUrlRequest,
        caller_id: str = Depends(get_caller_id),
        manager: UploadSessionManager = Depends(get_upload_manager),
    ) -> PartUrlResponse:
        url = manager.request_part_url(upload_id, body.part_number)
        return PartUrlResponse(url=url, part_number=body.part_number)

    @app.post("/uploads/{upload_id}/complete", response_model=CompleteUploadResponse)
    def complete_upload(
        upload_id: str,
        body: CompleteUploadRequest,
        caller_id: str = Depends(get_caller_id),
        manager: UploadSessionManager = Depends(get_upload_manager),
    ) -> CompleteUploadResponse:
        result = manager.complete(upload_id, body.parts, sha256=body.sha256)
        return CompleteUploadResponse(asset_id=result.asset_id, version_id=result.version_id)

    @app.post("/uploads/{upload_id}/abort", status_code=204)
    def abort_upload(
        upload_id: str,
        caller_id: str = Depends(get_caller_id),
        manager: UploadSessionManager = Depends(get_upload_manager),
    ) -> Response:
        manager.abort(upload_id)
        return Response(status_code=204)

    @app.get("/renditions/{version_id}", response_model=List[RenditionView])
    def list_renditions(
        version_id: str,
        caller_id: str = Depends(get_caller_id),
        manager: UploadSessionManager = Depends(get_upload_manager),
    ) -> List[RenditionView]:
        if manager.database.get_version(version_id) is None:
            raise NotFoundError(f"Version {version_id} not found")
        return [
            RenditionView(
                id=rendition.id,
                kind=rendition.kind,
                page=rendition.page,
                width=rendition.width,
                height=rendition.height,
                url=manager.storage.presign_get_url(rendition.key) if rendition.ready else None,
                ready=rendition.ready,
                created_at=rendition.created_at,
            )
            for rendition in manager.database.list_renditions(version_id)
        ]


app = create_app()
