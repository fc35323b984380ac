from __future__ import annotations

import uuid

import pytest

from resource_server.db import init_db
from resource_server.lifecycle import URLLifecycleManager
from resource_server.resources import ResourceService
from resource_server.store import ResourceRecord, ResourceStore, UploadRecord
from resource_server.tests.fakes import FakeClock, FakeGateway

SIGN_TTL_S = 3600
REFRESH_BUFFER_S = 300


@pytest.fixture
def db_url(tmp_path) -> str:
    url = f"sqlite:///{tmp_path / 'resources.db'}"
    init_db(url)
    return url


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway(clock) -> FakeGateway:
    return FakeGateway(clock)


@pytest.fixture
def store(db_url) -> ResourceStore:
    return ResourceStore(db_url)


@pytest.fixture
def manager(gateway, store, clock) -> URLLifecycleManager:
    return URLLifecycleManager(
        gateway,
        store,
        sign_ttl_s=SIGN_TTL_S,
        refresh_buffer_s=REFRESH_BUFFER_S,
        join_timeout_s=5,
        clock=clock,
    )


@pytest.fixture
def service(store, manager, gateway) -> ResourceService:
    return ResourceService(store, manager, gateway, batch_size=2)


@pytest.fixture
def make_resource(store, clock):
    def _make(
        *,
        expires_in_s: float | None = SIGN_TTL_S,
        category: str = "documents",
        is_active: bool = True,
        object_key: str | None = None,
    ) -> ResourceRecord:
        rid = str(uuid.uuid4())
        key = object_key or f"uploads/{rid}/file.pdf"
        t = clock()
        signed_url = None
        expires_at = None
        signed_at = None
        if expires_in_s is not None:
            signed_at = t - 60_000
            signed_url = f"https://objects.test/{key}?sig=seed"
            expires_at = t + int(expires_in_s * 1000)
        return store.create_resource(
            ResourceRecord(
                id=rid,
                object_key=key,
                title="Resume",
                file_name="file.pdf",
                content_type="application/pdf",
                size_bytes=1024,
                created_at=t,
                updated_at=t,
                category=category,
                signed_url=signed_url,
                url_expires_at=expires_at,
                url_signed_at=signed_at,
                is_active=is_active,
            )
        )

    return _make


@pytest.fixture
def make_upload(store, gateway, clock):
    def _make(file_name: str = "resume.pdf") -> UploadRecord:
        uid = str(uuid.uuid4())
        key = f"uploads/{uid}/{file_name}"
        gateway.put(key, b"%PDF-1.7", "application/pdf")
        return store.create_upload(
            UploadRecord(
                id=uid,
                object_key=key,
                file_name=file_name,
                content_type="application/pdf",
                size_bytes=8,
                created_at=clock(),
            )
        )

    return _make
