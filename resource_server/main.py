from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, File, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response

from resource_server.auth import User, get_admin
from resource_server.config import Settings, settings
from resource_server.db import init_db, now_ms
from resource_server.errors import (
    ObjectStoreError,
    PersistenceFailed,
    ResourceNotFound,
    SigningFailed,
    bad_request,
    not_found,
    payload_too_large,
    service_unavailable,
)
from resource_server.lifecycle import URLLifecycleManager
from resource_server.observability import increment, log_event, observe_ms, setup_logging, snapshot
from resource_server.resources import ResourceService
from resource_server.scheduler import RefreshScheduler
from resource_server.schemas import ResourceCreateRequest, ResourceUpdateRequest
from resource_server.storage import ObjectStoreGateway, S3Gateway
from resource_server.store import ResourceRecord, ResourceStore, UploadRecord


def _service(request: Request) -> ResourceService:
    return request.app.state.resources


def _resource_out(r: ResourceRecord) -> dict:
    return {
        "resource_id": r.id,
        "upload_id": r.upload_id,
        "title": r.title,
        "description": r.description,
        "category": r.category,
        "file_name": r.file_name,
        "content_type": r.content_type,
        "size_bytes": r.size_bytes,
        "signed_url": r.signed_url,
        "url_expires_at": r.url_expires_at,
        "download_count": r.download_count,
        "is_active": r.is_active,
        "created_at": r.created_at,
        "updated_at": r.updated_at,
    }


def _upload_out(u: UploadRecord) -> dict:
    return {
        "upload_id": u.id,
        "object_key": u.object_key,
        "file_name": u.file_name,
        "content_type": u.content_type,
        "size_bytes": u.size_bytes,
        "created_at": u.created_at,
    }


public = APIRouter(tags=["resources"])
admin = APIRouter(tags=["admin"], dependencies=[Depends(get_admin)])


@public.get("/resources")
def list_resources(service: ResourceService = Depends(_service)):
    return {"resources": [_resource_out(r) for r in service.list_resources(active_only=True)]}


@public.get("/resources/stats")
def resource_stats(service: ResourceService = Depends(_service)):
    return service.stats()


@public.get("/resources/{resource_id}")
def get_resource(resource_id: str, service: ResourceService = Depends(_service)):
    record = service.get(resource_id)
    if not record.is_active:
        raise not_found()
    return _resource_out(record)


@public.post("/resources/{resource_id}/download")
def download_resource(resource_id: str, service: ResourceService = Depends(_service)):
    result = service.download(resource_id)
    return {
        "resource_id": result.resource_id,
        "url": result.url,
        "expires_at": result.expires_at,
    }


@public.get("/uploads")
def list_uploads(service: ResourceService = Depends(_service)):
    return {"uploads": [_upload_out(u) for u in service.list_uploads()]}


@public.get("/uploads/summary")
def uploads_summary(service: ResourceService = Depends(_service)):
    return {
        "uploads": [_upload_out(u) for u in service.list_uploads()],
        "summary": service.upload_summary(),
    }


@public.get("/uploads/{upload_id}")
def get_upload(upload_id: str, service: ResourceService = Depends(_service)):
    return _upload_out(service.get_upload(upload_id))


@admin.get("/resources")
def admin_list_resources(
    active_only: bool = Query(default=False),
    service: ResourceService = Depends(_service),
):
    return {"resources": [_resource_out(r) for r in service.list_resources(active_only=active_only)]}


@admin.post("/resources", status_code=201)
def create_resource(
    body: ResourceCreateRequest,
    service: ResourceService = Depends(_service),
    user: User = Depends(get_admin),
):
    record = service.create_resource(
        upload_id=body.upload_id,
        title=body.title,
        description=body.description,
        category=body.category,
    )
    log_event("admin.resource_created", resource_id=record.id, user_id=user.user_id)
    return _resource_out(record)


@admin.post("/resources/refresh-urls")
def refresh_urls(service: ResourceService = Depends(_service), user: User = Depends(get_admin)):
    refreshed = service.force_refresh_all()
    log_event("admin.refresh_urls", refreshed=refreshed, user_id=user.user_id)
    return {"refreshed": refreshed}


@admin.get("/resources/stats")
def admin_resource_stats(service: ResourceService = Depends(_service)):
    return service.stats()


@admin.get("/resources/{resource_id}")
def admin_get_resource(resource_id: str, service: ResourceService = Depends(_service)):
    return _resource_out(service.get(resource_id))


@admin.put("/resources/{resource_id}")
def update_resource(
    resource_id: str,
    body: ResourceUpdateRequest,
    service: ResourceService = Depends(_service),
):
    return _resource_out(service.update_resource(resource_id, **body.model_dump()))


@admin.delete("/resources/{resource_id}")
def delete_resource(resource_id: str, service: ResourceService = Depends(_service)):
    return _resource_out(service.delete_resource(resource_id))


@admin.post("/uploads", status_code=201)
def create_upload(
    request: Request,
    file: UploadFile = File(...),
    service: ResourceService = Depends(_service),
):
    limit = request.app.state.settings.max_upload_bytes
    data = file.file.read(limit + 1)
    if len(data) > limit:
        raise payload_too_large("upload_too_large", "Upload exceeds size limit", {"limit": limit})
    if not data:
        raise bad_request("empty_upload", "Uploaded file is empty")
    record = service.create_upload(
        file_name=file.filename or "file", data=data, content_type=file.content_type
    )
    return _upload_out(record)


@admin.delete("/uploads/{upload_id}")
def delete_upload(upload_id: str, service: ResourceService = Depends(_service)):
    deactivated = service.delete_upload(upload_id)
    return {"upload_id": upload_id, "deactivated_resources": deactivated}


def _error_response(exc) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(
    cfg: Settings | None = None,
    *,
    gateway: ObjectStoreGateway | None = None,
) -> FastAPI:
    cfg = cfg or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        init_db(cfg.db_url)
        store = ResourceStore(cfg.db_url)
        object_store = gateway or S3Gateway(
            cfg.s3_bucket, region=cfg.s3_region, endpoint_url=cfg.s3_endpoint_url
        )
        manager = URLLifecycleManager(
            object_store,
            store,
            sign_ttl_s=cfg.sign_ttl_s,
            refresh_buffer_s=cfg.refresh_buffer_s,
            join_timeout_s=cfg.refresh_join_timeout_s,
        )
        app.state.manager = manager
        app.state.resources = ResourceService(
            store, manager, object_store, batch_size=cfg.sweep_batch_size
        )
        scheduler = RefreshScheduler(
            manager, store, interval_s=cfg.sweep_interval_s, batch_size=cfg.sweep_batch_size
        )
        app.state.scheduler = scheduler
        if cfg.scheduler_enabled:
            scheduler.start()
        try:
            yield
        finally:
            scheduler.stop()

    app = FastAPI(title="portfolio-resources", lifespan=lifespan)
    app.state.settings = cfg
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.cors_origins),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_observability(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        t0 = time.perf_counter()
        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = (time.perf_counter() - t0) * 1000.0
            increment("http.requests.total")
            observe_ms("http.request.latency_ms", duration_ms)
            log_event(
                "http.request",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status=status_code,
                duration_ms=round(duration_ms, 2),
            )
            if response is None:
                response = Response(status_code=status_code)
            response.headers["x-request-id"] = request_id

    @app.exception_handler(ResourceNotFound)
    async def _not_found(request: Request, exc: ResourceNotFound):
        return _error_response(not_found())

    @app.exception_handler(SigningFailed)
    async def _signing_failed(request: Request, exc: SigningFailed):
        increment("download.unavailable")
        return _error_response(
            service_unavailable("signing_failed", "No valid download URL is available right now")
        )

    @app.exception_handler(ObjectStoreError)
    async def _object_store_failed(request: Request, exc: ObjectStoreError):
        return _error_response(
            service_unavailable("object_store_unavailable", "Object store request failed")
        )

    @app.exception_handler(PersistenceFailed)
    async def _persistence_failed(request: Request, exc: PersistenceFailed):
        return _error_response(
            service_unavailable("storage_unavailable", "Database request failed")
        )

    @app.get("/metrics")
    def metrics():
        return snapshot()

    @app.get("/health")
    def health():
        return {"ok": True, "ts": now_ms()}

    app.include_router(public, prefix=cfg.api_prefix)
    app.include_router(public, prefix=cfg.legacy_api_prefix, include_in_schema=False)
    app.include_router(admin, prefix=cfg.admin_prefix)
    return app


app = create_app()
