from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from resource_server.db import now_ms
from resource_server.errors import ObjectStoreError, SigningFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignedURL:
    url: str
    expires_at: int


class ObjectStoreGateway(Protocol):
    def sign(self, object_key: str, ttl_s: int) -> SignedURL: ...
    def put(self, object_key: str, data: bytes, content_type: str | None) -> None: ...
    def delete(self, object_key: str) -> None: ...


def _error_code(exc: Exception) -> str:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        return str(response.get("Error", {}).get("Code", ""))
    return ""


class S3Gateway:
    """Presigned GET URLs and object writes against an S3-compatible bucket."""

    def __init__(
        self,
        bucket: str,
        *,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.bucket = bucket
        self.client = client or boto3.client("s3", region_name=region, endpoint_url=endpoint_url)

    def sign(self, object_key: str, ttl_s: int) -> SignedURL:
        # Presigning is offline; check the object exists so a missing key fails here.
        try:
            self.client.head_object(Bucket=self.bucket, Key=object_key)
            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": object_key},
                ExpiresIn=ttl_s,
            )
        except (BotoCoreError, ClientError) as exc:
            code = _error_code(exc)
            if code in {"404", "NoSuchKey", "NotFound"}:
                raise SigningFailed(f"object {object_key!r} does not exist") from exc
            raise SigningFailed(f"could not sign {object_key!r}: {exc}") from exc
        return SignedURL(url=url, expires_at=now_ms() + ttl_s * 1000)

    def put(self, object_key: str, data: bytes, content_type: str | None) -> None:
        kwargs: dict = {"Bucket": self.bucket, "Key": object_key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self.client.put_object(**kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise ObjectStoreError(f"could not store {object_key!r}") from exc
        logger.info("stored object key=%s bytes=%d", object_key, len(data))

    def delete(self, object_key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=object_key)
        except (BotoCoreError, ClientError) as exc:
            if _error_code(exc) in {"404", "NoSuchKey"}:
                return
            raise ObjectStoreError(f"could not delete {object_key!r}") from exc
        logger.info("deleted object key=%s", object_key)
