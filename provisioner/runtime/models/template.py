"""Template registry data models.

The registry index is persisted as a single JSON document
(``{templates_dir}/registry.json``) mapping template name to record.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class TemplateRecord(BaseModel):
    """A named, versioned template fetched from a remote or local source."""

    name: str
    source_url: str
    sub_path: str = ""
    ref: str = "main"
    version: str | None = Field(default=None, description="Opaque version recorded after fetch")
    content_hash: str | None = Field(default=None, description="SHA-256 over the cached file tree")
    description: str = ""
    created_at: datetime
    updated_at: datetime


class TemplateIndex(BaseModel):
    """On-disk registry document."""

    templates: dict[str, TemplateRecord] = Field(default_factory=dict)
