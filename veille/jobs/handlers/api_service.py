from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from veille.core.urls import sha256_hex
from veille.jobs.handlers.bridge import BridgeExtraction, BridgeRequest, BridgeResponse
from veille.services import apifetch
from veille.services.apifetch import APIFetchConfig

logger = logging.getLogger(__name__)

SERVICE_NAME = "api_fetch"


def make_api_fetch_service(client: httpx.AsyncClient):
    """Build the local ``api_fetch`` RPC service that serves ``api`` sources through the bridge."""

    async def api_fetch(payload: bytes) -> bytes:
        request = BridgeRequest.model_validate_json(payload)
        try:
            config = APIFetchConfig.model_validate(request.config or {})
        except ValidationError as exc:
            raise ValueError(f"api_fetch: invalid config: {exc.error_count()} errors") from exc

        results = await apifetch.fetch(client, request.url, config)
        response = BridgeResponse(
            extractions=[
                BridgeExtraction(
                    title=result.title,
                    content=result.text,
                    url=result.url or request.url,
                    content_hash=sha256_hex(f"{result.url}|{result.title}"),
                )
                for result in results
            ]
        )
        logger.debug("api_fetch: source_id=%s results=%s", request.source_id, len(results))
        return response.model_dump_json().encode("utf-8")

    return api_fetch
