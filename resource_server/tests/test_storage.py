from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import boto3
import pytest
from moto import mock_aws

from resource_server.db import now_ms
from resource_server.errors import SigningFailed
from resource_server.storage import S3Gateway

BUCKET = "portfolio-assets-test"


@pytest.fixture
def s3_gateway(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket=BUCKET)
        yield S3Gateway(BUCKET, client=client)


def test_sign_existing_object(s3_gateway):
    s3_gateway.put("uploads/a/resume.pdf", b"%PDF-1.7", "application/pdf")
    before = now_ms()

    signed = s3_gateway.sign("uploads/a/resume.pdf", 900)

    parsed = urlparse(signed.url)
    assert parsed.path.endswith("/uploads/a/resume.pdf")
    query = parse_qs(parsed.query)
    assert "X-Amz-Signature" in query or "Signature" in query
    assert before + 900_000 <= signed.expires_at <= now_ms() + 900_000


def test_sign_missing_object_fails(s3_gateway):
    with pytest.raises(SigningFailed):
        s3_gateway.sign("uploads/missing.pdf", 900)


def test_put_then_delete(s3_gateway):
    s3_gateway.put("uploads/b/talk.pdf", b"data", None)
    obj = s3_gateway.client.get_object(Bucket=BUCKET, Key="uploads/b/talk.pdf")
    assert obj["Body"].read() == b"data"

    s3_gateway.delete("uploads/b/talk.pdf")

    with pytest.raises(SigningFailed):
        s3_gateway.sign("uploads/b/talk.pdf", 900)
    # Deleting an absent key is not an error.
    s3_gateway.delete("uploads/b/talk.pdf")
