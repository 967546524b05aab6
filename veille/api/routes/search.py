import json

from fastapi import APIRouter, Depends, Query, Response, status

from veille.api.errors import SERVICE_ERRORS, to_http_exception
from veille.schemas.search import (
    SearchEngineCreateRequest,
    SearchEngineOut,
    SearchHitOut,
    SearchLogOut,
    ShardStatsOut,
)
from veille.schemas.sources import decode_json_object
from veille.services.store import SearchEngine
from veille.services.veille import get_service

router = APIRouter()


def _engine_out(engine: SearchEngine) -> SearchEngineOut:
    return SearchEngineOut(
        id=engine.id,
        name=engine.name,
        url_template=engine.url_template,
        strategy=engine.strategy,
        api_config=decode_json_object(engine.api_config),
        selectors=decode_json_object(engine.selectors),
        stealth_level=engine.stealth_level,
        rate_limit_ms=engine.rate_limit_ms,
        max_pages=engine.max_pages,
        enabled=engine.enabled,
        created_at=engine.created_at,
        updated_at=engine.updated_at,
    )


@router.get("/engines", response_model=list[SearchEngineOut])
async def list_engines(dossier_id: str, service=Depends(get_service)) -> list[SearchEngineOut]:
    try:
        engines = await service.list_search_engines(dossier_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return [_engine_out(engine) for engine in engines]


@router.post("/engines", response_model=SearchEngineOut, status_code=status.HTTP_201_CREATED)
async def create_engine(
    dossier_id: str,
    payload: SearchEngineCreateRequest,
    service=Depends(get_service),
) -> SearchEngineOut:
    engine = SearchEngine(
        id=payload.id or "",
        name=payload.name,
        url_template=payload.url_template,
        strategy=payload.strategy,
        api_config=json.dumps(payload.api_config),
        selectors=json.dumps(payload.selectors),
        stealth_level=payload.stealth_level,
        rate_limit_ms=payload.rate_limit_ms,
        max_pages=payload.max_pages,
        enabled=payload.enabled,
    )
    try:
        created = await service.add_search_engine(dossier_id, engine)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return _engine_out(created)


@router.delete("/engines/{engine_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_engine(dossier_id: str, engine_id: str, service=Depends(get_service)) -> Response:
    try:
        await service.delete_search_engine(dossier_id, engine_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/search", response_model=list[SearchHitOut])
async def search_extractions(
    dossier_id: str,
    service=Depends(get_service),
    q: str = Query(min_length=1, max_length=1000),
    limit: int = Query(default=20, ge=1, le=200),
) -> list[SearchHitOut]:
    try:
        hits = await service.search(dossier_id, q, limit=limit)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return [
        SearchHitOut(extraction_id=hit.extraction_id, source_id=hit.source_id, title=hit.title, text=hit.text, rank=hit.rank)
        for hit in hits
    ]


@router.get("/search-log", response_model=list[SearchLogOut])
async def search_log(
    dossier_id: str,
    service=Depends(get_service),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[SearchLogOut]:
    try:
        entries = await service.search_log(dossier_id, limit=limit)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return [
        SearchLogOut(id=entry.id, query=entry.query, result_count=entry.result_count, searched_at=entry.searched_at)
        for entry in entries
    ]


@router.get("/stats", response_model=ShardStatsOut)
async def shard_stats(dossier_id: str, service=Depends(get_service)) -> ShardStatsOut:
    try:
        stats = await service.stats(dossier_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return ShardStatsOut(
        sources=stats.sources,
        extractions=stats.extractions,
        fetch_logs=stats.fetch_logs,
        questions=stats.questions,
        broken_sources=stats.broken_sources,
        by_status=stats.by_status,
    )


@router.post("/engines/seed", response_model=list[SearchEngineOut], status_code=status.HTTP_201_CREATED)
async def seed_engines(dossier_id: str, service=Depends(get_service)) -> list[SearchEngineOut]:
    try:
        engines = await service.seed_search_engines(dossier_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return [_engine_out(engine) for engine in engines]
