from pydantic import BaseModel, Field


class QuestionCreateRequest(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=128)
    text: str = Field(min_length=1, max_length=2000)
    keywords: str = ""
    channels: list[str] = Field(default_factory=list)
    schedule_ms: int = 86_400_000
    max_results: int = Field(default=20, ge=1, le=500)
    follow_links: bool = True
    enabled: bool = True


class QuestionPatchRequest(BaseModel):
    text: str | None = Field(default=None, min_length=1, max_length=2000)
    keywords: str | None = None
    channels: list[str] | None = None
    schedule_ms: int | None = None
    max_results: int | None = Field(default=None, ge=1, le=500)
    follow_links: bool | None = None
    enabled: bool | None = None


class QuestionOut(BaseModel):
    id: str
    text: str
    keywords: str = ""
    channels: list[str] = Field(default_factory=list)
    schedule_ms: int
    max_results: int
    follow_links: bool
    enabled: bool
    last_run_at: int | None = None
    last_result_count: int = 0
    total_results: int = 0
    created_at: int
    updated_at: int


class QuestionRunOut(BaseModel):
    question_id: str
    new_results: int
