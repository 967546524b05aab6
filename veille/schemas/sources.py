import json
from typing import Any

from pydantic import BaseModel, Field

from veille.services.store import Extraction, Source


class SourceCreateRequest(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=512)
    url: str = Field(min_length=1, max_length=4096)
    source_type: str = "web"
    fetch_interval: int = 3_600_000
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)


class SourcePatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=512)
    url: str | None = Field(default=None, min_length=1, max_length=4096)
    source_type: str | None = None
    fetch_interval: int | None = None
    enabled: bool | None = None
    config: dict[str, Any] | None = None


class SourceOut(BaseModel):
    id: str
    name: str
    url: str
    source_type: str
    fetch_interval: int
    enabled: bool
    config: dict[str, Any] = Field(default_factory=dict)
    last_fetched_at: int | None = None
    last_hash: str = ""
    last_status: str
    last_error: str = ""
    fail_count: int = 0
    original_fetch_interval: int | None = None
    created_at: int
    updated_at: int


class ExtractionOut(BaseModel):
    id: str
    source_id: str
    content_hash: str
    title: str
    extracted_text: str
    extracted_html: str = ""
    url: str
    extracted_at: int
    metadata: dict[str, Any] = Field(default_factory=dict)


class FetchLogOut(BaseModel):
    id: str
    source_id: str
    status: str
    status_code: int | None = None
    content_hash: str = ""
    error_message: str = ""
    duration_ms: int
    fetched_at: int


def decode_json_object(raw: str) -> dict[str, Any]:
    try:
        decoded = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return decoded if isinstance(decoded, dict) else {}


def source_out(source: Source) -> SourceOut:
    return SourceOut(
        id=source.id,
        name=source.name,
        url=source.url,
        source_type=source.source_type,
        fetch_interval=source.fetch_interval,
        enabled=source.enabled,
        config=decode_json_object(source.config_json),
        last_fetched_at=source.last_fetched_at,
        last_hash=source.last_hash,
        last_status=source.last_status,
        last_error=source.last_error,
        fail_count=source.fail_count,
        original_fetch_interval=source.original_fetch_interval,
        created_at=source.created_at,
        updated_at=source.updated_at,
    )


def extraction_out(extraction: Extraction) -> ExtractionOut:
    return ExtractionOut(
        id=extraction.id,
        source_id=extraction.source_id,
        content_hash=extraction.content_hash,
        title=extraction.title,
        extracted_text=extraction.extracted_text,
        extracted_html=extraction.extracted_html,
        url=extraction.url,
        extracted_at=extraction.extracted_at,
        metadata=decode_json_object(extraction.metadata_json),
    )
