from __future__ import annotations

from dataclasses import dataclass

from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup
from markdownify import markdownify

from veille.core.urls import sha256_hex
from veille.extract.clean import ExtractError, clean_text

NOISE_TAGS = ("script", "style", "noscript", "template", "nav", "header", "footer", "aside", "form", "iframe", "svg")


@dataclass(slots=True)
class HtmlExtraction:
    title: str
    text: str
    html: str
    hash: str


def extract_html(body: bytes | str) -> HtmlExtraction:
    """Extract the readable content of an HTML page.

    The title comes from ``<title>``, then ``og:title``, then the first
    ``<h1>``. Content is taken from ``<article>``, ``<main>`` or
    ``role=main`` when present, the whole ``<body>`` otherwise, after
    navigation and script noise is dropped. ``hash`` is the SHA-256 of the
    cleaned text.
    """
    try:
        soup = BeautifulSoup(body, "lxml")
    except (ParserRejectedMarkup, ValueError) as exc:
        raise ExtractError(f"html parse: {exc}") from exc

    title = _find_title(soup)

    for tag in soup(NOISE_TAGS):
        tag.decompose()

    container = (
        soup.find("article")
        or soup.find("main")
        or soup.find(attrs={"role": "main"})
        or soup.body
        or soup
    )
    text = clean_text(container.get_text("\n"))
    return HtmlExtraction(title=title, text=text, html=str(container), hash=sha256_hex(text))


def html_to_markdown(html: str, fallback: str = "") -> str:
    """Render HTML as markdown; returns ``fallback`` when the result is empty."""
    if not html:
        return fallback
    try:
        rendered = markdownify(html, heading_style="ATX", strip=["img"])
    except (ValueError, TypeError):
        return fallback
    rendered = rendered.strip()
    return rendered or fallback


def _find_title(soup: BeautifulSoup) -> str:
    if soup.title is not None and soup.title.string:
        title = clean_text(soup.title.string)
        if title:
            return title
    og_title = soup.find("meta", attrs={"property": "og:title"})
    if og_title is not None and og_title.get("content"):
        return clean_text(str(og_title["content"]))
    heading = soup.find("h1")
    if heading is not None:
        return clean_text(heading.get_text(" "))
    return ""
