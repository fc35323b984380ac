from __future__ import annotations

from sqlalchemy import inspect, select

from resource_server.db import resource, session_scope, upgrade_db
from scripts.seed import main as seed_main


def test_migration_upgrade_fresh_db(tmp_path):
    db_url = f"sqlite:///{tmp_path / 'fresh.db'}"

    upgrade_db(db_url=db_url)

    with session_scope(db_url) as session:
        insp = inspect(session.bind)
        tables = set(insp.get_table_names())
        resource_columns = {c["name"] for c in insp.get_columns("resource")}

    assert {"upload", "resource", "alembic_version"}.issubset(tables)
    assert {"signed_url", "url_expires_at", "url_signed_at", "download_count"}.issubset(
        resource_columns
    )


def test_migration_then_seed(tmp_path):
    db_url = f"sqlite:///{tmp_path / 'seeded.db'}"

    upgrade_db(db_url=db_url)
    seed_main(db_url)
    seed_main(db_url)

    with session_scope(db_url) as session:
        rows = session.execute(select(resource.c.id, resource.c.signed_url)).all()
    assert len(rows) == 3
    assert all(r.signed_url is None for r in rows)
