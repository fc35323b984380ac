from __future__ import annotations

from pydantic import BaseModel, Field


class ResourceCreateRequest(BaseModel):
    upload_id: str
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(default="", max_length=10_000)
    category: str = Field(default="general", min_length=1, max_length=64)


class ResourceUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=10_000)
    category: str | None = Field(default=None, min_length=1, max_length=64)
