from __future__ import annotations

from dataclasses import dataclass, replace
import json

from veille.services.store import SearchEngine, Source

DEFAULT_INTERVAL_MS = 3_600_000
HALF_HOUR_MS = 1_800_000
DAY_MS = 86_400_000


@dataclass(slots=True, frozen=True)
class CatalogSource:
    name: str
    url: str
    source_type: str = "rss"
    config: dict | None = None
    interval_ms: int = DEFAULT_INTERVAL_MS

    def to_source(self) -> Source:
        return Source(
            id="",
            name=self.name,
            url=self.url,
            source_type=self.source_type,
            fetch_interval=self.interval_ms,
            enabled=True,
            config_json=json.dumps(self.config or {}),
        )


CATEGORIES: dict[str, tuple[CatalogSource, ...]] = {
    "tech": (
        CatalogSource("Hacker News", "https://hnrss.org/frontpage", interval_ms=HALF_HOUR_MS),
        CatalogSource("Lobsters", "https://lobste.rs/rss", interval_ms=HALF_HOUR_MS),
        CatalogSource("Ars Technica", "https://feeds.arstechnica.com/arstechnica/index"),
        CatalogSource("The Verge", "https://www.theverge.com/rss/index.xml"),
        CatalogSource("TechCrunch", "https://techcrunch.com/feed/"),
        CatalogSource("Python Insider", "https://blog.python.org/feeds/posts/default", interval_ms=DAY_MS),
    ),
    "legal-fr": (
        CatalogSource("Legifrance JORF", "https://www.legifrance.gouv.fr/rss/jo"),
        CatalogSource("CNIL Actualites", "https://www.cnil.fr/fr/rss.xml"),
        CatalogSource("EUR-Lex Recent", "https://eur-lex.europa.eu/rss/cli-recent-acts.xml", interval_ms=DAY_MS),
    ),
    "opendata": (
        CatalogSource(
            "data.gouv.fr Datasets",
            "https://www.data.gouv.fr/api/1/datasets/?sort=-created&page_size=20",
            source_type="api",
            config={"result_path": "data", "fields": {"title": "title", "text": "description", "url": "page"}},
            interval_ms=DAY_MS,
        ),
        CatalogSource(
            "OpenAlex Works",
            "https://api.openalex.org/works?sort=publication_date:desc&per_page=20",
            source_type="api",
            config={
                "result_path": "results",
                "fields": {"title": "title", "text": "abstract_inverted_index", "url": "id"},
            },
            interval_ms=DAY_MS,
        ),
    ),
    "academic": (
        CatalogSource("arXiv CS.AI", "https://rss.arxiv.org/rss/cs.AI", interval_ms=DAY_MS),
        CatalogSource("arXiv CS.CL", "https://rss.arxiv.org/rss/cs.CL", interval_ms=DAY_MS),
    ),
    "news-fr": (
        CatalogSource("Le Monde Pixels", "https://www.lemonde.fr/pixels/rss_full.xml"),
        CatalogSource("Next INpact", "https://www.nextinpact.com/rss/news.xml"),
    ),
}

# Engines with the ``generic`` strategy need a browser scraper and ship disabled.
DEFAULT_SEARCH_ENGINES: tuple[SearchEngine, ...] = (
    SearchEngine(
        id="brave_api",
        name="Brave Search",
        strategy="api",
        url_template="https://api.search.brave.com/res/v1/web/search?q={query}&count=20",
        api_config=json.dumps(
            {
                "headers": {"Accept": "application/json", "X-Subscription-Token": "${BRAVE_API_KEY}"},
                "result_path": "web.results",
                "fields": {"title": "title", "text": "description", "url": "url"},
            }
        ),
        rate_limit_ms=1000,
        max_pages=1,
    ),
    SearchEngine(
        id="github_search",
        name="GitHub Search",
        strategy="api",
        url_template="https://api.github.com/search/repositories?q={query}&sort=updated&per_page=20",
        api_config=json.dumps(
            {
                "headers": {"Accept": "application/vnd.github+json", "Authorization": "Bearer ${GITHUB_TOKEN}"},
                "result_path": "items",
                "fields": {"title": "full_name", "text": "description", "url": "html_url"},
            }
        ),
        rate_limit_ms=2000,
        max_pages=1,
    ),
    SearchEngine(
        id="ddg_html",
        name="DuckDuckGo HTML",
        strategy="generic",
        url_template="https://html.duckduckgo.com/html/?q={query}",
        selectors=json.dumps(
            {"result_item": ".result", "title": ".result__a", "link": ".result__a", "snippet": ".result__snippet"}
        ),
        stealth_level=2,
        rate_limit_ms=3000,
        max_pages=3,
        enabled=False,
    ),
    SearchEngine(
        id="scholar",
        name="Google Scholar",
        strategy="generic",
        url_template="https://scholar.google.com/scholar?q={query}",
        selectors=json.dumps({"result_item": ".gs_r", "title": ".gs_rt a", "link": ".gs_rt a", "snippet": ".gs_rs"}),
        stealth_level=3,
        rate_limit_ms=5000,
        max_pages=2,
        enabled=False,
    ),
)


def categories() -> list[str]:
    return sorted(CATEGORIES)


def catalog_sources(category: str) -> tuple[CatalogSource, ...] | None:
    return CATEGORIES.get(category)


def default_search_engines() -> list[SearchEngine]:
    """Fresh copies of the seed engines; callers insert them and the store fills timestamps in place."""
    return [replace(engine) for engine in DEFAULT_SEARCH_ENGINES]
