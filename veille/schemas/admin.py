from pydantic import BaseModel, Field


class DossierCreateRequest(BaseModel):
    id: str = Field(min_length=1, max_length=256)


class SourceHealthOut(BaseModel):
    dossier_id: str
    source_id: str
    name: str
    url: str
    source_type: str
    last_status: str
    last_error: str = ""
    fail_count: int
    last_fetched_at: int | None = None


class SweepResultOut(BaseModel):
    dossier_id: str
    source_id: str
    source_name: str
    url: str
    status_code: int
    recovered: bool
    error: str = ""


class ProbeRequest(BaseModel):
    url: str = Field(min_length=1, max_length=4096)


class ProbeOut(BaseModel):
    url: str
    status_code: int
    reachable: bool
    error: str = ""
