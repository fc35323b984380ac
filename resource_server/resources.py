from __future__ import annotations

import logging
import mimetypes
import posixpath
import re
import uuid
from dataclasses import dataclass
from typing import Any

from resource_server.errors import (
    ObjectStoreError,
    PersistenceFailed,
    ResourceNotFound,
    SigningFailed,
)
from resource_server.lifecycle import URLLifecycleManager
from resource_server.observability import increment, log_event
from resource_server.storage import ObjectStoreGateway
from resource_server.store import ResourceRecord, ResourceStore, UploadRecord

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class DownloadResult:
    resource_id: str
    url: str
    expires_at: int


def _object_key_for(file_name: str, upload_id: str) -> str:
    base = posixpath.basename(file_name.replace("\\", "/")) or "file"
    safe = _UNSAFE_NAME.sub("_", base).strip("._") or "file"
    return f"uploads/{upload_id}/{safe}"


class ResourceService:
    def __init__(
        self,
        store: ResourceStore,
        manager: URLLifecycleManager,
        gateway: ObjectStoreGateway,
        *,
        batch_size: int = 100,
    ) -> None:
        self.store = store
        self.manager = manager
        self.gateway = gateway
        self.batch_size = batch_size

    def list_resources(self, active_only: bool = True) -> list[ResourceRecord]:
        return self.store.list_resources(active_only=active_only)

    def get(self, resource_id: str) -> ResourceRecord:
        return self.store.load(resource_id)

    def download(self, resource_id: str) -> DownloadResult:
        record = self.store.load(resource_id)
        if not record.is_active:
            raise ResourceNotFound(resource_id)
        try:
            signed = self.manager.get_fresh_url(record)
            url, expires_at = signed.url, signed.expires_at
        except SigningFailed:
            # Serve the previous URL while it is still valid, even inside the buffer.
            previous = self.manager.current(record)
            if (
                previous.signed_url is None
                or previous.url_expires_at is None
                or previous.url_expires_at <= self.manager.clock()
            ):
                raise
            logger.warning("refresh failed for %s; serving previous URL", resource_id)
            increment("download.stale_fallback")
            url, expires_at = previous.signed_url, previous.url_expires_at

        try:
            self.store.increment_download_count(resource_id)
        except (PersistenceFailed, ResourceNotFound):
            increment("download.count_failed")
            log_event("download.count_failed", resource_id=resource_id)
            logger.warning("could not count download for %s", resource_id, exc_info=True)
        increment("download.served")
        return DownloadResult(resource_id=resource_id, url=url, expires_at=expires_at)

    def stats(self) -> dict[str, Any]:
        by_category: dict[str, dict[str, int]] = {}
        total = active = downloads = 0
        for row in self.store.category_totals():
            by_category[row["category"]] = {
                "total": row["total"],
                "active": row["active"],
                "downloads": row["downloads"],
            }
            total += row["total"]
            active += row["active"]
            downloads += row["downloads"]
        return {
            "total_resources": total,
            "active_resources": active,
            "total_downloads": downloads,
            "by_category": by_category,
        }

    def force_refresh_all(self) -> int:
        refreshed = 0
        failed = 0
        offset = 0
        while True:
            batch = self.store.load_active_batch(limit=self.batch_size, offset=offset)
            if not batch:
                break
            result = self.manager.sweep_stale(batch)
            refreshed += len(result.refreshed)
            failed += len(result.failed)
            if len(batch) < self.batch_size:
                break
            offset += self.batch_size
        log_event("resources.refresh_all", refreshed=refreshed, failed=failed)
        return refreshed

    def create_resource(
        self,
        *,
        upload_id: str,
        title: str,
        description: str = "",
        category: str = "general",
    ) -> ResourceRecord:
        source = self.store.load_upload(upload_id)
        t = self.manager.clock()
        record = self.store.create_resource(
            ResourceRecord(
                id=str(uuid.uuid4()),
                upload_id=source.id,
                object_key=source.object_key,
                title=title,
                description=description,
                category=category,
                file_name=source.file_name,
                content_type=source.content_type,
                size_bytes=source.size_bytes,
                created_at=t,
                updated_at=t,
            )
        )
        try:
            self.manager.refresh(record)
        except SigningFailed:
            # The scheduler picks it up on the next sweep.
            logger.warning("initial signing failed for resource %s", record.id, exc_info=True)
        log_event("resource.created", resource_id=record.id, upload_id=upload_id)
        return self.store.load(record.id)

    def update_resource(self, resource_id: str, **fields: Any) -> ResourceRecord:
        changes = {k: v for k, v in fields.items() if v is not None}
        return self.store.update_resource_details(resource_id, **changes)

    def delete_resource(self, resource_id: str) -> ResourceRecord:
        record = self.store.load(resource_id)
        if record.is_active:
            self.store.deactivate(resource_id)
            log_event("resource.deactivated", resource_id=resource_id)
        return self.store.load(resource_id)

    def create_upload(
        self, *, file_name: str, data: bytes, content_type: str | None = None
    ) -> UploadRecord:
        upload_id = str(uuid.uuid4())
        object_key = _object_key_for(file_name, upload_id)
        content_type = (
            content_type or mimetypes.guess_type(file_name)[0] or "application/octet-stream"
        )
        self.gateway.put(object_key, data, content_type)
        record = UploadRecord(
            id=upload_id,
            object_key=object_key,
            file_name=file_name,
            content_type=content_type,
            size_bytes=len(data),
            created_at=self.manager.clock(),
        )
        try:
            self.store.create_upload(record)
        except PersistenceFailed:
            try:
                self.gateway.delete(object_key)
            except ObjectStoreError:
                logger.warning("orphaned object %s after failed upload save", object_key)
            raise
        log_event("upload.created", upload_id=upload_id, size_bytes=len(data))
        return record

    def list_uploads(self) -> list[UploadRecord]:
        return self.store.list_uploads()

    def get_upload(self, upload_id: str) -> UploadRecord:
        return self.store.load_upload(upload_id)

    def upload_summary(self) -> dict[str, Any]:
        by_content_type: dict[str, dict[str, int]] = {}
        count = total_bytes = 0
        for row in self.store.upload_totals():
            by_content_type[row["content_type"]] = {
                "count": row["count"],
                "total_bytes": row["total_bytes"],
            }
            count += row["count"]
            total_bytes += row["total_bytes"]
        return {"count": count, "total_bytes": total_bytes, "by_content_type": by_content_type}

    def delete_upload(self, upload_id: str) -> int:
        source = self.store.load_upload(upload_id)
        self.gateway.delete(source.object_key)
        deactivated = self.store.deactivate_for_upload(upload_id)
        self.store.delete_upload(upload_id)
        log_event("upload.deleted", upload_id=upload_id, deactivated=deactivated)
        return deactivated
