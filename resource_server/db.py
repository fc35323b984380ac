from __future__ import annotations

import argparse
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Engine,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session

from resource_server.config import settings

ROOT = Path(__file__).resolve().parents[1]

metadata = MetaData()

upload = Table(
    "upload",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("object_key", String(512), nullable=False, unique=True),
    Column("file_name", String(255), nullable=False),
    Column("content_type", String(127), nullable=False),
    Column("size_bytes", BigInteger, nullable=False),
    Column("created_at", BigInteger, nullable=False),
)

resource = Table(
    "resource",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("upload_id", String(36), ForeignKey("upload.id", ondelete="SET NULL")),
    Column("object_key", String(512), nullable=False, index=True),
    Column("title", String(255), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("category", String(64), nullable=False, default="general"),
    Column("file_name", String(255), nullable=False),
    Column("content_type", String(127), nullable=False),
    Column("size_bytes", BigInteger, nullable=False),
    Column("signed_url", Text),
    Column("url_expires_at", BigInteger),
    Column("url_signed_at", BigInteger),
    Column("download_count", Integer, nullable=False, default=0),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", BigInteger, nullable=False),
    Column("updated_at", BigInteger, nullable=False),
)

Index("ix_resource_active_id", resource.c.is_active, resource.c.id)
Index("ix_resource_active_expiry", resource.c.is_active, resource.c.url_expires_at)

_engines: dict[str, Engine] = {}
_engines_lock = threading.Lock()


def get_engine(db_url: str | None = None) -> Engine:
    url = db_url or settings.db_url
    with _engines_lock:
        engine = _engines.get(url)
        if engine is None:
            engine = create_engine(url, future=True)
            _engines[url] = engine
        return engine


@contextmanager
def session_scope(db_url: str | None = None):
    with Session(get_engine(db_url)) as session:
        yield session


def init_db(db_url: str | None = None) -> None:
    url = make_url(db_url or settings.db_url)
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    metadata.create_all(get_engine(db_url))


def upgrade_db(db_url: str | None = None, revision: str = "head") -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config()
    cfg.set_main_option("script_location", str(ROOT / "alembic"))
    cfg.set_main_option("sqlalchemy.url", db_url or settings.db_url)
    command.upgrade(cfg, revision)


def now_ms() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


def _cli() -> None:
    parser = argparse.ArgumentParser()
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init")
    sub.add_parser("upgrade")
    args = parser.parse_args()
    if args.command == "init":
        init_db()
    elif args.command == "upgrade":
        upgrade_db()


if __name__ == "__main__":
    _cli()
