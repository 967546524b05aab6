from __future__ import annotations

import asyncio
from dataclasses import dataclass
import hashlib
import logging
from urllib.parse import urljoin

import httpx

from veille.core.errors import UnsafeURLError
from veille.core.ssrf import URLValidator, validate_url

logger = logging.getLogger(__name__)

REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_USER_AGENT = "veille/1.0"
DEFAULT_MAX_REDIRECTS = 5


class FetchError(Exception):
    """Fetch failure. The message carries ``http <code>`` or a canonical network substring."""

    def __init__(self, message: str, *, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class SSRFError(FetchError):
    """Raised when the URL or a redirect target points at a disallowed address."""


@dataclass(slots=True)
class FetchResult:
    body: bytes
    status_code: int
    hash: str
    etag: str
    last_modified: str
    changed: bool
    url: str


class Fetcher:
    """Conditional GET with manual redirect following, SSRF checks and a body cap.

    The fetcher has no side effects on the store and never retries.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_bytes: int = DEFAULT_MAX_BYTES,
        user_agent: str = DEFAULT_USER_AGENT,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        url_validator: URLValidator = validate_url,
    ) -> None:
        self.timeout = timeout if timeout > 0 else DEFAULT_TIMEOUT_SECONDS
        self.max_bytes = max_bytes if max_bytes > 0 else DEFAULT_MAX_BYTES
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.max_redirects = max(0, max_redirects)
        self.url_validator = url_validator
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(follow_redirects=False, timeout=self.timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def fetch(
        self,
        url: str,
        *,
        etag: str = "",
        last_modified: str = "",
        prev_hash: str = "",
        user_agent: str | None = None,
    ) -> FetchResult:
        await self._validate(url, "url blocked (ssrf)")

        headers = {"User-Agent": user_agent or self.user_agent}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified

        current_url = url
        for hop in range(self.max_redirects + 1):
            try:
                async with self.client.stream("GET", current_url, headers=headers, timeout=self.timeout) as response:
                    location = response.headers.get("location")
                    if response.status_code in REDIRECT_STATUS_CODES and location:
                        if hop >= self.max_redirects:
                            raise FetchError(f"too many redirects ({self.max_redirects})")
                        next_url = urljoin(str(response.url), location)
                        await self._validate(next_url, "redirect blocked (ssrf)")
                        logger.debug("fetch redirect from=%s to=%s status=%s", current_url, next_url, response.status_code)
                        current_url = next_url
                        continue

                    response_etag = response.headers.get("etag", "")
                    response_last_modified = response.headers.get("last-modified", "")
                    if response.status_code == 304:
                        return FetchResult(
                            body=b"",
                            status_code=304,
                            hash="",
                            etag=response_etag,
                            last_modified=response_last_modified,
                            changed=False,
                            url=current_url,
                        )
                    if response.status_code < 200 or response.status_code >= 400:
                        raise FetchError(f"http {response.status_code}", status_code=response.status_code)

                    body = await self._read_limited(response)
            except httpx.HTTPError as exc:
                raise FetchError(describe_transport_error(exc)) from exc

            content_hash = hashlib.sha256(body).hexdigest()
            return FetchResult(
                body=body,
                status_code=response.status_code,
                hash=content_hash,
                etag=response_etag,
                last_modified=response_last_modified,
                changed=not prev_hash or content_hash != prev_hash,
                url=current_url,
            )

        raise FetchError(f"too many redirects ({self.max_redirects})")

    async def _read_limited(self, response: httpx.Response) -> bytes:
        chunks: list[bytes] = []
        size = 0
        async for chunk in response.aiter_bytes():
            remaining = self.max_bytes - size
            if remaining <= 0:
                break
            piece = chunk[:remaining]
            chunks.append(piece)
            size += len(piece)
        return b"".join(chunks)

    async def _validate(self, url: str, prefix: str) -> None:
        try:
            await asyncio.to_thread(self.url_validator, url)
        except UnsafeURLError as exc:
            raise SSRFError(f"{prefix}: {exc}") from exc


def describe_transport_error(exc: httpx.HTTPError) -> str:
    """Map an httpx transport failure onto the substrings the error classifier matches."""
    detail = str(exc) or exc.__class__.__name__
    lowered = detail.lower()
    if isinstance(exc, httpx.TimeoutException):
        return f"timeout: {detail}"
    if isinstance(exc, httpx.ConnectError):
        if any(marker in lowered for marker in ("name or service not known", "nodename nor servname", "getaddrinfo", "no address associated", "name resolution")):
            return f"no such host: {detail}"
        if "refused" in lowered:
            return f"connection refused: {detail}"
        if "ssl" in lowered or "certificate" in lowered or "tls" in lowered:
            return f"tls handshake: {detail}"
        return f"connect error: {detail}"
    if isinstance(exc, (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError)):
        return f"connection reset: {detail}"
    if isinstance(exc, httpx.TooManyRedirects):
        return f"too many redirects: {detail}"
    return f"http get: {detail}"
