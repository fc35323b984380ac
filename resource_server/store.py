from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from resource_server.db import now_ms, resource, session_scope, upload
from resource_server.errors import PersistenceFailed, ResourceNotFound


@dataclass(frozen=True)
class ResourceRecord:
    id: str
    object_key: str
    title: str
    file_name: str
    content_type: str
    size_bytes: int
    created_at: int
    updated_at: int
    upload_id: str | None = None
    description: str = ""
    category: str = "general"
    signed_url: str | None = None
    url_expires_at: int | None = None
    url_signed_at: int | None = None
    download_count: int = 0
    is_active: bool = True

    def replace(self, **changes: Any) -> ResourceRecord:
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class UploadRecord:
    id: str
    object_key: str
    file_name: str
    content_type: str
    size_bytes: int
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


_RESOURCE_FIELDS = tuple(f.name for f in dataclasses.fields(ResourceRecord))
_DETAIL_FIELDS = {"title", "description", "category"}


def _resource_from_row(row) -> ResourceRecord:
    values = {name: row[name] for name in _RESOURCE_FIELDS}
    values["is_active"] = bool(values["is_active"])
    return ResourceRecord(**values)


def _upload_from_row(row) -> UploadRecord:
    return UploadRecord(**{f.name: row[f.name] for f in dataclasses.fields(UploadRecord)})


class ResourceStore:
    """Durable rows for resources and uploads.

    ``save`` writes only the URL fields. The download counter and the active
    flag have their own single-column updates so a refresh committing an older
    snapshot never rolls back a concurrent download or delete.
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.db_url = db_url

    def load(self, resource_id: str) -> ResourceRecord:
        try:
            with session_scope(self.db_url) as session:
                row = (
                    session.execute(select(resource).where(resource.c.id == resource_id))
                    .mappings()
                    .one_or_none()
                )
        except SQLAlchemyError as exc:
            raise PersistenceFailed(f"could not load resource {resource_id}") from exc
        if row is None:
            raise ResourceNotFound(resource_id)
        return _resource_from_row(row)

    def load_active_batch(self, limit: int, offset: int = 0) -> list[ResourceRecord]:
        with session_scope(self.db_url) as session:
            rows = (
                session.execute(
                    select(resource)
                    .where(resource.c.is_active.is_(True))
                    .order_by(resource.c.id.asc())
                    .limit(limit)
                    .offset(offset)
                )
                .mappings()
                .all()
            )
        return [_resource_from_row(r) for r in rows]

    def list_resources(self, active_only: bool = True) -> list[ResourceRecord]:
        q = select(resource)
        if active_only:
            q = q.where(resource.c.is_active.is_(True))
        with session_scope(self.db_url) as session:
            rows = (
                session.execute(q.order_by(resource.c.created_at.desc(), resource.c.id.asc()))
                .mappings()
                .all()
            )
        return [_resource_from_row(r) for r in rows]

    def save(self, record: ResourceRecord) -> None:
        try:
            with session_scope(self.db_url) as session:
                result = session.execute(
                    update(resource)
                    .where(resource.c.id == record.id)
                    .values(
                        signed_url=record.signed_url,
                        url_expires_at=record.url_expires_at,
                        url_signed_at=record.url_signed_at,
                        updated_at=now_ms(),
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailed(f"could not save resource {record.id}") from exc
        if result.rowcount == 0:
            raise ResourceNotFound(record.id)

    def increment_download_count(self, resource_id: str) -> None:
        try:
            with session_scope(self.db_url) as session:
                result = session.execute(
                    update(resource)
                    .where(resource.c.id == resource_id)
                    .values(download_count=resource.c.download_count + 1)
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailed(f"could not count download for {resource_id}") from exc
        if result.rowcount == 0:
            raise ResourceNotFound(resource_id)

    def create_resource(self, record: ResourceRecord) -> ResourceRecord:
        try:
            with session_scope(self.db_url) as session:
                session.execute(resource.insert().values(**record.to_dict()))
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailed(f"could not create resource {record.id}") from exc
        return record

    def update_resource_details(self, resource_id: str, **fields: Any) -> ResourceRecord:
        unknown = set(fields) - _DETAIL_FIELDS
        if unknown:
            raise ValueError(f"fields not editable: {sorted(unknown)}")
        if fields:
            try:
                with session_scope(self.db_url) as session:
                    result = session.execute(
                        update(resource)
                        .where(resource.c.id == resource_id)
                        .values(**fields, updated_at=now_ms())
                    )
                    session.commit()
            except SQLAlchemyError as exc:
                raise PersistenceFailed(f"could not update resource {resource_id}") from exc
            if result.rowcount == 0:
                raise ResourceNotFound(resource_id)
        return self.load(resource_id)

    def deactivate(self, resource_id: str) -> None:
        try:
            with session_scope(self.db_url) as session:
                result = session.execute(
                    update(resource)
                    .where(resource.c.id == resource_id)
                    .values(is_active=False, updated_at=now_ms())
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailed(f"could not deactivate resource {resource_id}") from exc
        if result.rowcount == 0:
            raise ResourceNotFound(resource_id)

    def deactivate_for_upload(self, upload_id: str) -> int:
        try:
            with session_scope(self.db_url) as session:
                result = session.execute(
                    update(resource)
                    .where(resource.c.upload_id == upload_id, resource.c.is_active.is_(True))
                    .values(is_active=False, updated_at=now_ms())
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailed(f"could not deactivate resources of {upload_id}") from exc
        return result.rowcount

    def category_totals(self) -> list[dict[str, Any]]:
        with session_scope(self.db_url) as session:
            rows = session.execute(
                select(
                    resource.c.category,
                    func.count(resource.c.id).label("total"),
                    func.sum(case((resource.c.is_active.is_(True), 1), else_=0)).label("active"),
                    func.coalesce(func.sum(resource.c.download_count), 0).label("downloads"),
                )
                .group_by(resource.c.category)
                .order_by(resource.c.category.asc())
            ).all()
        return [
            {
                "category": r.category,
                "total": int(r.total),
                "active": int(r.active or 0),
                "downloads": int(r.downloads),
            }
            for r in rows
        ]

    def create_upload(self, record: UploadRecord) -> UploadRecord:
        try:
            with session_scope(self.db_url) as session:
                session.execute(upload.insert().values(**record.to_dict()))
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailed(f"could not create upload {record.id}") from exc
        return record

    def load_upload(self, upload_id: str) -> UploadRecord:
        try:
            with session_scope(self.db_url) as session:
                row = (
                    session.execute(select(upload).where(upload.c.id == upload_id))
                    .mappings()
                    .one_or_none()
                )
        except SQLAlchemyError as exc:
            raise PersistenceFailed(f"could not load upload {upload_id}") from exc
        if row is None:
            raise ResourceNotFound(upload_id)
        return _upload_from_row(row)

    def list_uploads(self) -> list[UploadRecord]:
        with session_scope(self.db_url) as session:
            rows = (
                session.execute(select(upload).order_by(upload.c.created_at.desc(), upload.c.id))
                .mappings()
                .all()
            )
        return [_upload_from_row(r) for r in rows]

    def upload_totals(self) -> list[dict[str, Any]]:
        with session_scope(self.db_url) as session:
            rows = session.execute(
                select(
                    upload.c.content_type,
                    func.count(upload.c.id).label("count"),
                    func.coalesce(func.sum(upload.c.size_bytes), 0).label("total_bytes"),
                )
                .group_by(upload.c.content_type)
                .order_by(upload.c.content_type.asc())
            ).all()
        return [
            {"content_type": r.content_type, "count": int(r.count), "total_bytes": int(r.total_bytes)}
            for r in rows
        ]

    def delete_upload(self, upload_id: str) -> None:
        try:
            with session_scope(self.db_url) as session:
                session.execute(
                    update(resource)
                    .where(resource.c.upload_id == upload_id)
                    .values(upload_id=None)
                )
                session.execute(upload.delete().where(upload.c.id == upload_id))
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailed(f"could not delete upload {upload_id}") from exc
