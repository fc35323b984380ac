import uuid

from sqlalchemy import select

from resource_server.db import init_db, now_ms, resource, session_scope, upload

DEMO_FILES = [
    ("resume.pdf", "application/pdf", "documents"),
    ("portfolio-deck.pdf", "application/pdf", "documents"),
    ("headshot.jpg", "image/jpeg", "media"),
]


def main(db_url: str | None = None) -> None:
    init_db(db_url)
    with session_scope(db_url) as session:
        if session.execute(select(upload.c.id).limit(1)).first():
            return
        t = now_ms()
        for file_name, content_type, category in DEMO_FILES:
            upload_id = str(uuid.uuid4())
            object_key = f"uploads/{upload_id}/{file_name}"
            session.execute(
                upload.insert().values(
                    id=upload_id,
                    object_key=object_key,
                    file_name=file_name,
                    content_type=content_type,
                    size_bytes=0,
                    created_at=t,
                )
            )
            # No URL yet: the refresh scheduler signs these on its first sweep.
            session.execute(
                resource.insert().values(
                    id=str(uuid.uuid4()),
                    upload_id=upload_id,
                    object_key=object_key,
                    title=file_name.rsplit(".", 1)[0].replace("-", " ").title(),
                    description="",
                    category=category,
                    file_name=file_name,
                    content_type=content_type,
                    size_bytes=0,
                    download_count=0,
                    is_active=True,
                    created_at=t,
                    updated_at=t,
                )
            )
        session.commit()


if __name__ == "__main__":
    main()
