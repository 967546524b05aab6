from __future__ import annotations

import json
import logging
import os
from typing import Any
from urllib.parse import quote, urlencode

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from veille.core.urls import sha256_hex
from veille.jobs.handlers.bridge import BridgeExtraction, BridgeRequest, BridgeResponse
from veille.services.apifetch import read_limited

logger = logging.getLogger(__name__)

SERVICE_NAME = "github_fetch"
DEFAULT_API_BASE_URL = "https://api.github.com"
RESOURCES = ("commits", "issues", "pulls", "releases")
_URL_PREFIXES = ("https://github.com/", "http://github.com/", "github.com/")


class GitHubError(Exception):
    pass


class GitHubConfig(BaseModel):
    """Optional per-source settings read from ``config_json``."""

    model_config = ConfigDict(extra="ignore")

    resource: str = ""
    per_page: int = 30
    state: str = "open"


def parse_github_url(url: str) -> tuple[str, str, str]:
    """Split ``github.com/<owner>/<repo>[/<resource>]`` into its parts; empty strings when it does not match."""
    for prefix in _URL_PREFIXES:
        if url.startswith(prefix):
            rest = url[len(prefix) :].rstrip("/")
            break
    else:
        return "", "", ""
    parts = rest.split("/", 3)
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return "", "", ""
    return parts[0], parts[1], parts[2] if len(parts) >= 3 else ""


def build_api_url(base_url: str, owner: str, repo: str, resource: str, config: GitHubConfig) -> str:
    base = f"{base_url.rstrip('/')}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"
    if resource in ("issues", "pulls"):
        params = {"state": config.state, "per_page": config.per_page, "sort": "updated", "direction": "desc"}
        return f"{base}/{resource}?{urlencode(params)}"
    if resource == "releases":
        return f"{base}/releases?{urlencode({'per_page': config.per_page})}"
    return f"{base}/commits?{urlencode({'per_page': config.per_page})}"


def parse_items(body: bytes, resource: str) -> list[BridgeExtraction]:
    try:
        raw = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise GitHubError(f"invalid json: {exc}") from exc
    if not isinstance(raw, list):
        raise GitHubError("invalid json: expected an array")

    extractions: list[BridgeExtraction] = []
    for obj in raw:
        if not isinstance(obj, dict):
            continue
        if resource in ("issues", "pulls"):
            title, text, key = _issue(obj)
        elif resource == "releases":
            title, text, key = _release(obj)
        else:
            title, text, key = _commit(obj)
        if not key:
            continue
        extractions.append(
            BridgeExtraction(title=title, content=text, url=_text(obj.get("html_url")), content_hash=sha256_hex(key))
        )
    return extractions


def make_github_fetch_service(
    client: httpx.AsyncClient,
    *,
    api_base_url: str = DEFAULT_API_BASE_URL,
    token: str | None = None,
):
    """Build the local ``github_fetch`` RPC service: commits, issues, pulls or releases of one repository.

    The bridge handler stores what comes back, so dedup works on the per-item hash
    (commit sha, issue number, release id).
    """

    async def github_fetch(payload: bytes) -> bytes:
        request = BridgeRequest.model_validate_json(payload)
        owner, repo, resource = parse_github_url(request.url)
        if not owner:
            raise GitHubError(f"github_fetch: cannot parse url {request.url!r} (expected github.com/owner/repo)")
        try:
            config = GitHubConfig.model_validate(request.config or {})
        except ValidationError as exc:
            raise GitHubError(f"github_fetch: invalid config: {exc.error_count()} errors") from exc

        resource = config.resource or resource or "commits"
        if resource not in RESOURCES:
            raise GitHubError(f"github_fetch: unsupported resource {resource!r}")
        if config.per_page <= 0:
            config.per_page = 30

        headers = {"Accept": "application/vnd.github+json", "X-GitHub-Api-Version": "2022-11-28"}
        bearer = token or os.getenv("GITHUB_TOKEN")
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"

        api_url = build_api_url(api_base_url, owner, repo, resource, config)
        try:
            async with client.stream("GET", api_url, headers=headers) as response:
                if response.status_code < 200 or response.status_code >= 400:
                    raise GitHubError(f"github_fetch: http {response.status_code}")
                body = await read_limited(response)
        except httpx.HTTPError as exc:
            raise GitHubError(f"github_fetch: http: {exc}") from exc

        try:
            extractions = parse_items(body, resource)
        except GitHubError as exc:
            raise GitHubError(f"github_fetch: parse: {exc}") from exc
        logger.debug(
            "github_fetch: source_id=%s repo=%s/%s resource=%s items=%s",
            request.source_id,
            owner,
            repo,
            resource,
            len(extractions),
        )
        return BridgeResponse(extractions=extractions).model_dump_json().encode("utf-8")

    return github_fetch


def _commit(obj: dict[str, Any]) -> tuple[str, str, str]:
    commit = obj.get("commit")
    message = _text(commit.get("message")) if isinstance(commit, dict) else ""
    return message.split("\n", 1)[0], message, _text(obj.get("sha"))


def _issue(obj: dict[str, Any]) -> tuple[str, str, str]:
    title = _text(obj.get("title"))
    body = _text(obj.get("body"))
    labels = [_text(label.get("name")) for label in obj.get("labels") or [] if isinstance(label, dict)]
    text = title
    if labels:
        text += "\nLabels: " + ", ".join(labels)
    if body:
        text += "\n\n" + body
    return title, text, _text(obj.get("number"))


def _release(obj: dict[str, Any]) -> tuple[str, str, str]:
    tag = _text(obj.get("tag_name"))
    title = _text(obj.get("name")) or tag
    text = title
    if tag and tag != title:
        text += f" ({tag})"
    body = _text(obj.get("body"))
    if body:
        text += "\n\n" + body
    return title, text, _text(obj.get("id"))


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)
