import json

from fastapi import APIRouter, Depends, Query, Response, status

from veille.api.errors import SERVICE_ERRORS, to_http_exception
from veille.schemas.questions import QuestionCreateRequest, QuestionOut, QuestionPatchRequest, QuestionRunOut
from veille.schemas.sources import ExtractionOut, extraction_out
from veille.services.store import TrackedQuestion
from veille.services.veille import get_service

router = APIRouter()


def _question_out(question: TrackedQuestion) -> QuestionOut:
    try:
        channels = json.loads(question.channels or "[]")
    except json.JSONDecodeError:
        channels = []
    return QuestionOut(
        id=question.id,
        text=question.text,
        keywords=question.keywords,
        channels=[str(channel) for channel in channels] if isinstance(channels, list) else [],
        schedule_ms=question.schedule_ms,
        max_results=question.max_results,
        follow_links=question.follow_links,
        enabled=question.enabled,
        last_run_at=question.last_run_at,
        last_result_count=question.last_result_count,
        total_results=question.total_results,
        created_at=question.created_at,
        updated_at=question.updated_at,
    )


@router.get("", response_model=list[QuestionOut])
async def list_questions(dossier_id: str, service=Depends(get_service)) -> list[QuestionOut]:
    try:
        questions = await service.list_questions(dossier_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return [_question_out(question) for question in questions]


@router.post("", response_model=QuestionOut, status_code=status.HTTP_201_CREATED)
async def create_question(dossier_id: str, payload: QuestionCreateRequest, service=Depends(get_service)) -> QuestionOut:
    question = TrackedQuestion(
        id=payload.id or "",
        text=payload.text,
        keywords=payload.keywords,
        channels=json.dumps(payload.channels),
        schedule_ms=payload.schedule_ms,
        max_results=payload.max_results,
        follow_links=payload.follow_links,
        enabled=payload.enabled,
    )
    try:
        created = await service.add_question(dossier_id, question)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return _question_out(created)


@router.get("/{question_id}", response_model=QuestionOut)
async def get_question(dossier_id: str, question_id: str, service=Depends(get_service)) -> QuestionOut:
    try:
        question = await service.get_question(dossier_id, question_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return _question_out(question)


@router.patch("/{question_id}", response_model=QuestionOut)
async def patch_question(
    dossier_id: str,
    question_id: str,
    payload: QuestionPatchRequest,
    service=Depends(get_service),
) -> QuestionOut:
    try:
        question = await service.update_question(
            dossier_id,
            question_id,
            text=payload.text,
            keywords=payload.keywords,
            channels=json.dumps(payload.channels) if payload.channels is not None else None,
            schedule_ms=payload.schedule_ms,
            max_results=payload.max_results,
            follow_links=payload.follow_links,
            enabled=payload.enabled,
        )
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return _question_out(question)


@router.delete("/{question_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_question(dossier_id: str, question_id: str, service=Depends(get_service)) -> Response:
    try:
        await service.delete_question(dossier_id, question_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{question_id}/run", response_model=QuestionRunOut)
async def run_question(dossier_id: str, question_id: str, service=Depends(get_service)) -> QuestionRunOut:
    try:
        new_results = await service.run_question_now(dossier_id, question_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return QuestionRunOut(question_id=question_id, new_results=new_results)


@router.get("/{question_id}/results", response_model=list[ExtractionOut])
async def question_results(
    dossier_id: str,
    question_id: str,
    service=Depends(get_service),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[ExtractionOut]:
    try:
        extractions = await service.question_results(dossier_id, question_id, limit=limit)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc) from exc
    return [extraction_out(extraction) for extraction in extractions]
