from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from veille.core.errors import HandlerError
from veille.jobs.handlers.web import load_config
from veille.services.questions import QuestionRunError, QuestionRunner
from veille.services.store import Source, Store

if TYPE_CHECKING:
    from veille.jobs.pipeline import Job, Pipeline

logger = logging.getLogger(__name__)


class QuestionHandler:
    """Runs the tracked question backing a ``question`` source."""

    def __init__(self, runner: QuestionRunner) -> None:
        self.runner = runner

    async def handle(self, store: Store, source: Source, job: Job, pipeline: Pipeline) -> None:
        started = time.monotonic()
        question_id = str(load_config(source.config_json).get("question_id") or source.id)

        question = await store.get_question(question_id)
        if question is None:
            logger.warning("question: tracked question not found source_id=%s question_id=%s", source.id, question_id)
            return

        try:
            new_count = await self.runner.run(store, question, job.dossier_id)
        except QuestionRunError as exc:
            await pipeline.log_fetch(store, source.id, "error", started, error_message=str(exc))
            await store.record_fetch_error(source.id, str(exc))
            logger.warning("question: run failed question_id=%s error=%s", question_id, exc)
            raise HandlerError(f"question run: {exc}") from exc

        await pipeline.log_fetch(store, source.id, "ok", started)
        await store.record_fetch_success(source.id, "")
        logger.info("question: ran question_id=%s new=%s", question_id, new_count)
