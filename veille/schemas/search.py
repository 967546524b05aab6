from typing import Any, Literal

from pydantic import BaseModel, Field

SearchStrategy = Literal["api", "generic"]


class SearchEngineCreateRequest(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=256)
    url_template: str = Field(min_length=1, max_length=4096)
    strategy: SearchStrategy = "api"
    api_config: dict[str, Any] = Field(default_factory=dict)
    selectors: dict[str, Any] = Field(default_factory=dict)
    stealth_level: int = Field(default=1, ge=0, le=3)
    rate_limit_ms: int = Field(default=2000, ge=0)
    max_pages: int = Field(default=3, ge=1, le=50)
    enabled: bool = True


class SearchEngineOut(BaseModel):
    id: str
    name: str
    url_template: str
    strategy: str
    api_config: dict[str, Any] = Field(default_factory=dict)
    selectors: dict[str, Any] = Field(default_factory=dict)
    stealth_level: int
    rate_limit_ms: int
    max_pages: int
    enabled: bool
    created_at: int
    updated_at: int


class SearchHitOut(BaseModel):
    extraction_id: str
    source_id: str
    title: str
    text: str
    rank: float


class SearchLogOut(BaseModel):
    id: str
    query: str
    result_count: int
    searched_at: int


class ShardStatsOut(BaseModel):
    sources: int
    extractions: int
    fetch_logs: int
    questions: int
    broken_sources: int
    by_status: dict[str, int] = Field(default_factory=dict)
