from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import lru_cache
import json
import logging
from urllib.parse import urlsplit

import httpx

from veille.core.config import Settings, get_settings
from veille.core.errors import (
    DuplicateSourceError,
    HandlerError,
    InvalidInputError,
    NotFoundError,
    QuotaExceededError,
    UnsafeURLError,
)
from veille.core.ssrf import URLValidator, allow_all, validate_url
from veille.core.urls import normalize_source_url
from veille.jobs.handlers.api_service import SERVICE_NAME as API_FETCH_SERVICE
from veille.jobs.handlers.api_service import make_api_fetch_service
from veille.jobs.handlers.document import DocumentHandler
from veille.jobs.handlers.github_service import SERVICE_NAME as GITHUB_FETCH_SERVICE
from veille.jobs.handlers.github_service import make_github_fetch_service
from veille.jobs.handlers.question import QuestionHandler
from veille.jobs.handlers.rss import RSSHandler
from veille.jobs.handlers.web import WebHandler
from veille.jobs.pipeline import Job, Pipeline, discover_handlers
from veille.jobs.repair import Repairer, probe_url
from veille.jobs.scheduler import Scheduler
from veille.jobs.sweeper import Prober, Sweeper, SweepResult
from veille.services import catalog
from veille.services.buffer import BufferWriter
from veille.services.fetcher import Fetcher
from veille.services.questions import QuestionRunError, QuestionRunner, parse_channels
from veille.services.rpc import ServiceRouter
from veille.services.search import build_search_url
from veille.services.shards import ShardPool
from veille.services.store import (
    Extraction,
    FetchLogEntry,
    SearchEngine,
    SearchHit,
    SearchLogEntry,
    ShardStats,
    Source,
    Store,
    StoreConflictError,
    StoreError,
    StoreQueryError,
    TrackedQuestion,
)
from veille.services.validate import check_source_url, validate_source_input

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_TYPE = "web"
DEFAULT_FETCH_INTERVAL_MS = 3_600_000
SEARCH_STRATEGIES = {"api", "generic"}
QUESTION_NAME_MAX = 80


@dataclass(slots=True)
class SourceHealth:
    dossier_id: str
    source_id: str
    name: str
    url: str
    source_type: str
    last_status: str
    last_error: str
    fail_count: int
    last_fetched_at: int | None


class VeilleService:
    """Entry point for every dossier operation, plus the scheduler, sweeper and worker pool behind them."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
        url_validator: URLValidator | None = None,
        prober: Prober | None = None,
    ) -> None:
        self.settings = settings
        self.shards = ShardPool(settings.data_dir)
        if url_validator is None:
            url_validator = allow_all if settings.allow_private_networks else validate_url
        self.url_validator = url_validator

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(follow_redirects=False, timeout=settings.fetch_timeout_seconds)
        self.fetcher = Fetcher(
            client=self.client,
            timeout=settings.fetch_timeout_seconds,
            max_bytes=settings.fetch_max_bytes,
            user_agent=settings.fetch_user_agent,
            max_redirects=settings.fetch_max_redirects,
            url_validator=url_validator,
        )
        self.buffer = BufferWriter(settings.buffer_dir) if settings.buffer_dir else None
        self.router = ServiceRouter(client=self.client, timeout=settings.fetch_timeout_seconds)
        self.question_runner = QuestionRunner(self.client, self.fetcher, buffer=self.buffer)

        self.pipeline = Pipeline(self.fetcher, buffer=self.buffer, repairer=Repairer())
        self.pipeline.register("web", WebHandler())
        self.pipeline.register("rss", RSSHandler())
        self.pipeline.register("document", DocumentHandler())
        self.pipeline.register("question", QuestionHandler(self.question_runner))

        self.router.register_local(API_FETCH_SERVICE, make_api_fetch_service(self.client))
        self.router.register_local(
            GITHUB_FETCH_SERVICE,
            make_github_fetch_service(
                self.client, api_base_url=settings.github_api_base_url, token=settings.github_token
            ),
        )
        self.router.register_from_json(settings.rpc_services_json)
        discover_handlers(self.pipeline, self.router)

        self.prober = prober or self._probe
        self.scheduler = Scheduler(
            self.shards.resolve,
            self.shards.list_active_dossiers,
            self.submit,
            check_interval=settings.scheduler_check_interval_seconds,
            max_fail_count=settings.scheduler_max_fail_count,
        )
        self.sweeper = Sweeper(
            self.shards.resolve,
            self.shards.list_active_dossiers,
            interval=settings.sweeper_interval_seconds,
            prober=self.prober,
        )

        self._semaphore = asyncio.Semaphore(max(1, settings.worker_concurrency))
        self._in_flight: set[tuple[str, str]] = set()
        self._job_tasks: set[asyncio.Task[None]] = set()
        self._loop_tasks: list[asyncio.Task[None]] = []
        self._stop_event: asyncio.Event | None = None

    # lifecycle

    async def open_shards(self) -> list[str]:
        dossier_ids = await self.shards.open_all()
        logger.info("shards ready data_dir=%s dossiers=%s", self.settings.data_dir, len(dossier_ids))
        return dossier_ids

    async def start(self) -> None:
        if self._loop_tasks:
            return
        self._stop_event = asyncio.Event()
        self._loop_tasks = [
            asyncio.create_task(self.scheduler.run(self._stop_event), name="veille-scheduler"),
            asyncio.create_task(self.sweeper.run(self._stop_event), name="veille-sweeper"),
        ]
        logger.info("service started data_dir=%s concurrency=%s", self.settings.data_dir, self.settings.worker_concurrency)

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._loop_tasks:
            await asyncio.gather(*self._loop_tasks, return_exceptions=True)
            self._loop_tasks = []
        if self._job_tasks:
            await asyncio.gather(*list(self._job_tasks), return_exceptions=True)
        logger.info("service stopped")

    async def aclose(self) -> None:
        await self.stop()
        await self.shards.close()
        await self.router.aclose()
        if self._owns_client:
            await self.client.aclose()

    # worker pool

    async def submit(self, job: Job) -> None:
        """Scheduler sink: run the job on the bounded pool unless the source is already in flight."""
        key = (job.dossier_id, job.source_id)
        if key in self._in_flight:
            logger.debug("job already in flight dossier_id=%s source_id=%s", job.dossier_id, job.source_id)
            return
        self._in_flight.add(key)
        task = asyncio.create_task(self._run_pooled(job, key))
        self._job_tasks.add(task)
        task.add_done_callback(self._job_tasks.discard)

    async def _run_pooled(self, job: Job, key: tuple[str, str]) -> None:
        try:
            async with self._semaphore:
                await self.process_job(job)
        finally:
            self._in_flight.discard(key)

    async def process_job(self, job: Job) -> bool:
        """Run one job to completion. Failures are already recorded on the source; returns success."""
        try:
            store = await self.shards.resolve(job.dossier_id)
            await self.pipeline.handle_job(store, job)
        except HandlerError as exc:
            logger.warning("job failed dossier_id=%s source_id=%s error=%s", job.dossier_id, job.source_id, exc)
            return False
        except StoreError:
            logger.exception("job storage failure dossier_id=%s source_id=%s", job.dossier_id, job.source_id)
            return False
        return True

    # sources

    async def create_dossier(self, dossier_id: str) -> None:
        await self.shards.create(dossier_id)

    async def list_dossiers(self) -> list[str]:
        return await self.shards.list_active_dossiers()

    async def add_source(self, dossier_id: str, source: Source) -> Source:
        store = await self.shards.resolve(dossier_id)
        source.source_type = source.source_type or DEFAULT_SOURCE_TYPE
        source.fetch_interval = source.fetch_interval or DEFAULT_FETCH_INTERVAL_MS
        source.config_json = source.config_json or "{}"
        validate_source_input(source, self.pipeline.source_types())
        source.url = normalize_source_url(source.url)
        await self._check_url(source.source_type, source.url)

        if await store.count_sources() >= self.settings.max_sources_per_dossier:
            raise QuotaExceededError(f"dossier {dossier_id} already has {self.settings.max_sources_per_dossier} sources")
        if await store.get_source_by_url(source.url) is not None:
            raise DuplicateSourceError(f"source already exists for url {source.url}")

        try:
            created = await store.insert_source(source)
        except StoreConflictError as exc:
            raise DuplicateSourceError(f"source already exists for url {source.url}") from exc
        logger.info("source added dossier_id=%s source_id=%s type=%s", dossier_id, created.id, created.source_type)
        return created

    async def seed_catalog(self, dossier_id: str, category: str) -> list[Source]:
        """Bulk-add a curated category of sources. Sources already present are skipped."""
        entries = catalog.catalog_sources(category)
        if entries is None:
            raise InvalidInputError(f"unknown catalog category {category!r} (known: {', '.join(catalog.categories())})")

        seeded: list[Source] = []
        for entry in entries:
            try:
                seeded.append(await self.add_source(dossier_id, entry.to_source()))
            except (DuplicateSourceError, InvalidInputError) as exc:
                logger.info("catalog: source skipped dossier_id=%s url=%s reason=%s", dossier_id, entry.url, exc)
            except QuotaExceededError:
                logger.warning(
                    "catalog: quota reached dossier_id=%s category=%s seeded=%s", dossier_id, category, len(seeded)
                )
                break
        logger.info("catalog: seeded dossier_id=%s category=%s count=%s", dossier_id, category, len(seeded))
        return seeded

    async def list_sources(self, dossier_id: str) -> list[Source]:
        store = await self.shards.resolve(dossier_id)
        return await store.list_sources()

    async def get_source(self, dossier_id: str, source_id: str) -> Source:
        store = await self.shards.resolve(dossier_id)
        return await self._require_source(store, source_id)

    async def update_source(
        self,
        dossier_id: str,
        source_id: str,
        *,
        name: str | None = None,
        url: str | None = None,
        source_type: str | None = None,
        fetch_interval: int | None = None,
        enabled: bool | None = None,
        config_json: str | None = None,
    ) -> Source:
        store = await self.shards.resolve(dossier_id)
        source = await self._require_source(store, source_id)
        previous_url = source.url

        if name is not None:
            source.name = name
        if url is not None:
            source.url = url
        if source_type is not None:
            source.source_type = source_type
        if fetch_interval is not None:
            source.fetch_interval = fetch_interval
        if enabled is not None:
            source.enabled = enabled
        if config_json is not None:
            source.config_json = config_json

        validate_source_input(source, self.pipeline.source_types())
        source.url = normalize_source_url(source.url)
        if source.url != previous_url:
            await self._check_url(source.source_type, source.url)
            existing = await store.get_source_by_url(source.url)
            if existing is not None and existing.id != source.id:
                raise DuplicateSourceError(f"source already exists for url {source.url}")

        try:
            await store.update_source(source)
        except StoreConflictError as exc:
            raise DuplicateSourceError(f"source already exists for url {source.url}") from exc
        return source

    async def delete_source(self, dossier_id: str, source_id: str) -> None:
        store = await self.shards.resolve(dossier_id)
        if not await store.delete_source(source_id):
            raise NotFoundError(f"source {source_id} not found")
        logger.info("source deleted dossier_id=%s source_id=%s", dossier_id, source_id)

    async def fetch_now(self, dossier_id: str, source_id: str) -> Source:
        """Run the source's handler immediately and return its updated state."""
        store = await self.shards.resolve(dossier_id)
        source = await self._require_source(store, source_id)
        try:
            await self.pipeline.handle_job(store, Job(dossier_id=dossier_id, source_id=source.id, url=source.url))
        except HandlerError as exc:
            logger.info("fetch now failed dossier_id=%s source_id=%s error=%s", dossier_id, source_id, exc)
        return await self._require_source(store, source_id)

    async def reset_source(self, dossier_id: str, source_id: str) -> Source:
        store = await self.shards.resolve(dossier_id)
        await self._require_source(store, source_id)
        await store.reset_source(source_id)
        logger.info("source reset dossier_id=%s source_id=%s", dossier_id, source_id)
        return await self._require_source(store, source_id)

    async def list_extractions(self, dossier_id: str, source_id: str | None = None, limit: int = 50) -> list[Extraction]:
        store = await self.shards.resolve(dossier_id)
        return await store.list_extractions(source_id=source_id, limit=limit)

    async def get_extraction(self, dossier_id: str, extraction_id: str) -> Extraction:
        store = await self.shards.resolve(dossier_id)
        extraction = await store.get_extraction(extraction_id)
        if extraction is None:
            raise NotFoundError(f"extraction {extraction_id} not found")
        return extraction

    async def fetch_history(self, dossier_id: str, source_id: str, limit: int = 50) -> list[FetchLogEntry]:
        store = await self.shards.resolve(dossier_id)
        return await store.fetch_history(source_id, limit)

    async def stats(self, dossier_id: str) -> ShardStats:
        store = await self.shards.resolve(dossier_id)
        return await store.stats()

    # tracked questions

    async def add_question(self, dossier_id: str, question: TrackedQuestion) -> TrackedQuestion:
        store = await self.shards.resolve(dossier_id)
        self._validate_question(question)
        created = await store.insert_question(question)

        backing = Source(
            id=created.id,
            name=question_source_name(created.text),
            url=f"question://{created.id}",
            source_type="question",
            fetch_interval=created.schedule_ms,
            enabled=created.enabled,
            config_json=json.dumps({"question_id": created.id}),
        )
        try:
            validate_source_input(backing, self.pipeline.source_types())
            await store.insert_source(backing)
        except (InvalidInputError, StoreError):
            await store.delete_question(created.id)
            raise
        logger.info("question added dossier_id=%s question_id=%s", dossier_id, created.id)
        return created

    async def list_questions(self, dossier_id: str) -> list[TrackedQuestion]:
        store = await self.shards.resolve(dossier_id)
        return await store.list_questions()

    async def get_question(self, dossier_id: str, question_id: str) -> TrackedQuestion:
        store = await self.shards.resolve(dossier_id)
        return await self._require_question(store, question_id)

    async def update_question(
        self,
        dossier_id: str,
        question_id: str,
        *,
        text: str | None = None,
        keywords: str | None = None,
        channels: str | None = None,
        schedule_ms: int | None = None,
        max_results: int | None = None,
        follow_links: bool | None = None,
        enabled: bool | None = None,
    ) -> TrackedQuestion:
        store = await self.shards.resolve(dossier_id)
        question = await self._require_question(store, question_id)
        if text is not None:
            question.text = text
        if keywords is not None:
            question.keywords = keywords
        if channels is not None:
            question.channels = channels
        if schedule_ms is not None:
            question.schedule_ms = schedule_ms
        if max_results is not None:
            question.max_results = max_results
        if follow_links is not None:
            question.follow_links = follow_links
        if enabled is not None:
            question.enabled = enabled
        self._validate_question(question)
        await store.update_question(question)

        backing = await store.get_source(question.id)
        if backing is not None:
            backing.fetch_interval = question.schedule_ms
            backing.enabled = question.enabled
            backing.name = question_source_name(question.text)
            validate_source_input(backing, self.pipeline.source_types())
            await store.update_source(backing)
        return question

    async def delete_question(self, dossier_id: str, question_id: str) -> None:
        store = await self.shards.resolve(dossier_id)
        if not await store.delete_question(question_id):
            raise NotFoundError(f"question {question_id} not found")
        await store.delete_source(question_id)
        logger.info("question deleted dossier_id=%s question_id=%s", dossier_id, question_id)

    async def run_question_now(self, dossier_id: str, question_id: str) -> int:
        store = await self.shards.resolve(dossier_id)
        question = await self._require_question(store, question_id)
        try:
            return await self.question_runner.run(store, question, dossier_id)
        except QuestionRunError as exc:
            raise InvalidInputError(str(exc)) from exc

    async def question_results(self, dossier_id: str, question_id: str, limit: int = 50) -> list[Extraction]:
        store = await self.shards.resolve(dossier_id)
        await self._require_question(store, question_id)
        return await store.list_extractions(source_id=question_id, limit=limit)

    # search engines and full-text search

    async def add_search_engine(self, dossier_id: str, engine: SearchEngine) -> SearchEngine:
        store = await self.shards.resolve(dossier_id)
        if not engine.name or not engine.name.strip():
            raise InvalidInputError("engine name is required")
        if not engine.url_template:
            raise InvalidInputError("url_template is required")
        engine.strategy = engine.strategy or "api"
        if engine.strategy not in SEARCH_STRATEGIES:
            raise InvalidInputError(f"invalid strategy {engine.strategy!r}")
        try:
            await asyncio.to_thread(self.url_validator, build_search_url(engine.url_template, "query"))
        except UnsafeURLError as exc:
            raise InvalidInputError(f"url_template refused: {exc}") from exc
        for field_name in ("api_config", "selectors"):
            try:
                json.loads(getattr(engine, field_name) or "{}")
            except json.JSONDecodeError as exc:
                raise InvalidInputError(f"{field_name} is not valid JSON: {exc.msg}") from exc
        try:
            return await store.insert_search_engine(engine)
        except StoreConflictError as exc:
            raise DuplicateSourceError(f"search engine {engine.id} already exists") from exc

    async def seed_search_engines(self, dossier_id: str) -> list[SearchEngine]:
        """Insert the default search engines, skipping those the dossier already has."""
        seeded: list[SearchEngine] = []
        for engine in catalog.default_search_engines():
            try:
                seeded.append(await self.add_search_engine(dossier_id, engine))
            except (DuplicateSourceError, InvalidInputError) as exc:
                logger.info("catalog: engine skipped dossier_id=%s engine=%s reason=%s", dossier_id, engine.id, exc)
        return seeded

    async def list_search_engines(self, dossier_id: str) -> list[SearchEngine]:
        store = await self.shards.resolve(dossier_id)
        return await store.list_search_engines()

    async def delete_search_engine(self, dossier_id: str, engine_id: str) -> None:
        store = await self.shards.resolve(dossier_id)
        if not await store.delete_search_engine(engine_id):
            raise NotFoundError(f"search engine {engine_id} not found")

    async def search(self, dossier_id: str, query: str, limit: int = 20) -> list[SearchHit]:
        if not query or not query.strip():
            raise InvalidInputError("query is required")
        store = await self.shards.resolve(dossier_id)
        try:
            hits = await store.search(query, limit)
        except StoreQueryError as exc:
            raise InvalidInputError(f"invalid search query: {exc}") from exc
        await store.insert_search_log(query, len(hits))
        return hits

    async def search_log(self, dossier_id: str, limit: int = 50) -> list[SearchLogEntry]:
        store = await self.shards.resolve(dossier_id)
        return await store.list_search_log(limit)

    # admin

    async def list_source_health(self) -> list[SourceHealth]:
        health: list[SourceHealth] = []
        for dossier_id in await self.shards.list_active_dossiers():
            store = await self.shards.resolve(dossier_id)
            for source in await store.list_broken_sources():
                health.append(
                    SourceHealth(
                        dossier_id=dossier_id,
                        source_id=source.id,
                        name=source.name,
                        url=source.url,
                        source_type=source.source_type,
                        last_status=source.last_status,
                        last_error=source.last_error,
                        fail_count=source.fail_count,
                        last_fetched_at=source.last_fetched_at,
                    )
                )
        return health

    async def sweep_now(self) -> list[SweepResult]:
        return await self.sweeper.run_once()

    async def probe_url(self, url: str) -> tuple[int, str]:
        normalized = normalize_source_url(url)
        if urlsplit(normalized).scheme not in ("http", "https"):
            raise InvalidInputError(f"probe: only http(s) urls can be probed: {url}")
        await self._check_url("web", normalized)
        return await self.prober(normalized)

    # helpers

    async def _probe(self, url: str) -> tuple[int, str]:
        return await probe_url(
            url, client=self.client, timeout=self.settings.probe_timeout_seconds, url_validator=self.url_validator
        )

    async def _check_url(self, source_type: str, url: str) -> None:
        await asyncio.to_thread(check_source_url, source_type, url, self.url_validator)

    def _validate_question(self, question: TrackedQuestion) -> None:
        if not question.text or not question.text.strip():
            raise InvalidInputError("question text is required")
        if question.max_results < 0:
            raise InvalidInputError("max_results must not be negative")
        try:
            parse_channels(question.channels)
        except QuestionRunError as exc:
            raise InvalidInputError(str(exc)) from exc

    async def _require_source(self, store: Store, source_id: str) -> Source:
        source = await store.get_source(source_id)
        if source is None:
            raise NotFoundError(f"source {source_id} not found")
        return source

    async def _require_question(self, store: Store, question_id: str) -> TrackedQuestion:
        question = await store.get_question(question_id)
        if question is None:
            raise NotFoundError(f"question {question_id} not found")
        return question


def question_source_name(text: str) -> str:
    name = f"Q: {text}"
    if len(name) > QUESTION_NAME_MAX + 3:
        name = name[:QUESTION_NAME_MAX] + "..."
    return name


@lru_cache
def get_service() -> VeilleService:
    return VeilleService(get_settings())
