import json

from fastapi import APIRouter, Depends, Query, Response, status

from veille.api.errors import SERVICE_ERRORS, to_http_exception
from veille.schemas.sources import (
    ExtractionOut,
    FetchLogOut,
    SourceCreateRequest,
    SourceOut,
    SourcePatchRequest,
    extraction_out,
    source_out,
)
from veille.services.store import Source
from veille.services.veille import get_service

router = APIRouter()


@router.get("/sources", response_model=list[SourceOut])
async def list_sources(dossier_id: str, service=Depends(get_service)) -> list[SourceOut]:
    try:
        sources = await service.list_sources(dossier_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return [source_out(source) for source in sources]


@router.post("/sources", response_model=SourceOut, status_code=status.HTTP_201_CREATED)
async def create_source(dossier_id: str, payload: SourceCreateRequest, service=Depends(get_service)) -> SourceOut:
    source = Source(
        id=payload.id or "",
        name=payload.name,
        url=payload.url,
        source_type=payload.source_type,
        fetch_interval=payload.fetch_interval,
        enabled=payload.enabled,
        config_json=json.dumps(payload.config),
    )
    try:
        created = await service.add_source(dossier_id, source)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return source_out(created)


@router.get("/sources/{source_id}", response_model=SourceOut)
async def get_source(dossier_id: str, source_id: str, service=Depends(get_service)) -> SourceOut:
    try:
        source = await service.get_source(dossier_id, source_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return source_out(source)


@router.patch("/sources/{source_id}", response_model=SourceOut)
async def patch_source(
    dossier_id: str,
    source_id: str,
    payload: SourcePatchRequest,
    service=Depends(get_service),
) -> SourceOut:
    try:
        source = await service.update_source(
            dossier_id,
            source_id,
            name=payload.name,
            url=payload.url,
            source_type=payload.source_type,
            fetch_interval=payload.fetch_interval,
            enabled=payload.enabled,
            config_json=json.dumps(payload.config) if payload.config is not None else None,
        )
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return source_out(source)


@router.delete("/sources/{source_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_source(dossier_id: str, source_id: str, service=Depends(get_service)) -> Response:
    try:
        await service.delete_source(dossier_id, source_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sources/{source_id}/fetch", response_model=SourceOut)
async def fetch_source_now(dossier_id: str, source_id: str, service=Depends(get_service)) -> SourceOut:
    try:
        source = await service.fetch_now(dossier_id, source_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return source_out(source)


@router.post("/sources/{source_id}/reset", response_model=SourceOut)
async def reset_source(dossier_id: str, source_id: str, service=Depends(get_service)) -> SourceOut:
    try:
        source = await service.reset_source(dossier_id, source_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return source_out(source)


@router.get("/sources/{source_id}/extractions", response_model=list[ExtractionOut])
async def list_source_extractions(
    dossier_id: str,
    source_id: str,
    service=Depends(get_service),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[ExtractionOut]:
    try:
        await service.get_source(dossier_id, source_id)
        extractions = await service.list_extractions(dossier_id, source_id=source_id, limit=limit)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return [extraction_out(extraction) for extraction in extractions]


@router.get("/sources/{source_id}/history", response_model=list[FetchLogOut])
async def source_fetch_history(
    dossier_id: str,
    source_id: str,
    service=Depends(get_service),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[FetchLogOut]:
    try:
        entries = await service.fetch_history(dossier_id, source_id, limit=limit)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return [
        FetchLogOut(
            id=entry.id,
            source_id=entry.source_id,
            status=entry.status,
            status_code=entry.status_code,
            content_hash=entry.content_hash,
            error_message=entry.error_message,
            duration_ms=entry.duration_ms,
            fetched_at=entry.fetched_at,
        )
        for entry in entries
    ]


@router.get("/extractions", response_model=list[ExtractionOut])
async def list_extractions(
    dossier_id: str,
    service=Depends(get_service),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[ExtractionOut]:
    try:
        extractions = await service.list_extractions(dossier_id, limit=limit)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return [extraction_out(extraction) for extraction in extractions]


@router.get("/extractions/{extraction_id}", response_model=ExtractionOut)
async def get_extraction(dossier_id: str, extraction_id: str, service=Depends(get_service)) -> ExtractionOut:
    try:
        extraction = await service.get_extraction(dossier_id, extraction_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return extraction_out(extraction)


@router.post("/catalog/{category}", response_model=list[SourceOut], status_code=status.HTTP_201_CREATED)
async def seed_catalog(dossier_id: str, category: str, service=Depends(get_service)) -> list[SourceOut]:
    try:
        sources = await service.seed_catalog(dossier_id, category)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return [source_out(source) for source in sources]
