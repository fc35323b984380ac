from __future__ import annotations

import pytest

from resource_server.errors import PersistenceFailed
from resource_server.store import ResourceStore


@pytest.fixture
def broken_store(tmp_path) -> ResourceStore:
    # No tables: every query fails inside the database driver.
    return ResourceStore(f"sqlite:///{tmp_path / 'empty.db'}")


@pytest.mark.parametrize(
    "call",
    [
        lambda s: s.load("r1"),
        lambda s: s.update_resource_details("r1", title="CV"),
        lambda s: s.update_resource_details("r1"),
        lambda s: s.deactivate("r1"),
        lambda s: s.deactivate_for_upload("u1"),
        lambda s: s.load_upload("u1"),
        lambda s: s.delete_upload("u1"),
    ],
    ids=["load", "update", "update-noop", "deactivate", "deactivate-upload", "load-upload", "delete-upload"],
)
def test_database_errors_become_persistence_failures(broken_store, call):
    with pytest.raises(PersistenceFailed):
        call(broken_store)


def test_resources_sharing_an_object_key_are_allowed(store, make_resource):
    first = make_resource(object_key="uploads/shared/file.pdf")
    second = make_resource(object_key="uploads/shared/file.pdf")
    assert {r.id for r in store.load_active_batch(limit=10)} == {first.id, second.id}
