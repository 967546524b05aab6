from fastapi import APIRouter, Depends, status

from veille.api.errors import SERVICE_ERRORS, to_http_exception
from veille.schemas.admin import DossierCreateRequest, ProbeOut, ProbeRequest, SourceHealthOut, SweepResultOut
from veille.services import catalog
from veille.services.veille import get_service

router = APIRouter()


@router.get("/dossiers", response_model=list[str])
async def list_dossiers(service=Depends(get_service)) -> list[str]:
    try:
        return await service.list_dossiers()
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc


@router.post("/dossiers", status_code=status.HTTP_201_CREATED)
async def create_dossier(payload: DossierCreateRequest, service=Depends(get_service)) -> dict[str, str]:
    try:
        await service.create_dossier(payload.id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return {"id": payload.id}


@router.get("/source-health", response_model=list[SourceHealthOut])
async def source_health(service=Depends(get_service)) -> list[SourceHealthOut]:
    try:
        rows = await service.list_source_health()
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return [
        SourceHealthOut(
            dossier_id=row.dossier_id,
            source_id=row.source_id,
            name=row.name,
            url=row.url,
            source_type=row.source_type,
            last_status=row.last_status,
            last_error=row.last_error,
            fail_count=row.fail_count,
            last_fetched_at=row.last_fetched_at,
        )
        for row in rows
    ]


@router.post("/sweep", response_model=list[SweepResultOut])
async def sweep_now(service=Depends(get_service)) -> list[SweepResultOut]:
    try:
        results = await service.sweep_now()
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return [
        SweepResultOut(
            dossier_id=result.dossier_id,
            source_id=result.source_id,
            source_name=result.source_name,
            url=result.url,
            status_code=result.status_code,
            recovered=result.recovered,
            error=result.error,
        )
        for result in results
    ]


@router.post("/probe", response_model=ProbeOut)
async def probe(payload: ProbeRequest, service=Depends(get_service)) -> ProbeOut:
    try:
        status_code, error = await service.probe_url(payload.url)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return ProbeOut(url=payload.url, status_code=status_code, reachable=200 <= status_code < 400, error=error)


@router.get("/catalog", response_model=dict[str, list[str]])
async def list_catalog() -> dict[str, list[str]]:
    """Seed categories and the source names each one adds."""
    return {name: [entry.name for entry in catalog.catalog_sources(name) or ()] for name in catalog.categories()}
