from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import json
import logging

import httpx

logger = logging.getLogger(__name__)

ServiceHandler = Callable[[bytes], Awaitable[bytes]]


class RPCError(Exception):
    """Raised for unknown services, transport failures and errors returned by a service."""


@dataclass(slots=True)
class ServiceInfo:
    name: str
    transport: str
    endpoint: str = ""


class ServiceRouter:
    """Name-addressed request/response router: ``call(name, payload_bytes) -> bytes``.

    Services are either local coroutines or remote HTTP endpoints that accept a
    JSON POST and answer with JSON.
    """

    def __init__(self, *, client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
        self._local: dict[str, ServiceHandler] = {}
        self._remote: dict[str, str] = {}
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def register_local(self, name: str, handler: ServiceHandler) -> None:
        self._remote.pop(name, None)
        self._local[name] = handler
        logger.info("rpc service registered name=%s transport=local", name)

    def register_http(self, name: str, endpoint: str) -> None:
        self._local.pop(name, None)
        self._remote[name] = endpoint
        logger.info("rpc service registered name=%s transport=http endpoint=%s", name, endpoint)

    def register_from_json(self, raw: str | None) -> int:
        """Register HTTP services from a ``{"name": "endpoint"}`` JSON object."""
        if not raw:
            return 0
        try:
            mapping = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"rpc services: invalid json: {exc}") from exc
        if not isinstance(mapping, dict):
            raise ValueError("rpc services: expected a JSON object of name -> endpoint")
        for name, endpoint in mapping.items():
            self.register_http(str(name), str(endpoint))
        return len(mapping)

    def list_services(self) -> list[ServiceInfo]:
        services = [ServiceInfo(name=name, transport="local") for name in self._local]
        services.extend(ServiceInfo(name=name, transport="http", endpoint=url) for name, url in self._remote.items())
        return sorted(services, key=lambda info: info.name)

    async def call(self, name: str, payload: bytes) -> bytes:
        handler = self._local.get(name)
        if handler is not None:
            try:
                return await handler(payload)
            except RPCError:
                raise
            except Exception as exc:
                raise RPCError(f"rpc {name}: {exc}") from exc

        endpoint = self._remote.get(name)
        if endpoint is None:
            raise RPCError(f"rpc {name}: unknown service")
        try:
            response = await self._client.post(
                endpoint,
                content=payload,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise RPCError(f"rpc {name}: {exc.__class__.__name__}: {exc}") from exc
        if response.status_code >= 400:
            raise RPCError(f"rpc {name}: http {response.status_code}")
        return response.content

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
