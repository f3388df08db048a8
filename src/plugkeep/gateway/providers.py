"""Host capability providers.

Each provider implements one capability and is bound to the gateway at
startup. The gateway is the only component that calls providers directly.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

import httpx

if TYPE_CHECKING:
    from plugkeep.config.schema import GatewayConfig

logger = logging.getLogger(__name__)


class CapabilityProvider(Protocol):
    """Host-side implementation of a capability."""

    async def invoke(self, method: str, payload: dict[str, Any]) -> Any: ...


class ProviderError(Exception):
    """A provider could not complete a call."""


class CallableProvider:
    """Dispatches methods to plain Python callables.

    Usage:
        provider = CallableProvider({
            "get": lambda payload: memory.get(payload["key"]),
        })
    """

    def __init__(self, methods: dict[str, Callable[[dict[str, Any]], Any]]):
        self._methods = dict(methods)

    @property
    def methods(self) -> list[str]:
        return sorted(self._methods)

    async def invoke(self, method: str, payload: dict[str, Any]) -> Any:
        handler = self._methods.get(method)
        if handler is None:
            raise ProviderError(f"Unknown method '{method}'")

        result = handler(payload)
        if inspect.isawaitable(result):
            result = await result
        return result


class HttpCapabilityProvider:
    """Forwards calls to a host service over HTTP.

    Sends ``POST {base_url}/invoke`` with ``{"method", "payload"}`` and expects
    a JSON body of the form ``{"result": ...}`` or ``{"error": "..."}``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize provider.

        Args:
            base_url: Host service base URL
            timeout: Request timeout in seconds
            max_retries: Maximum attempts on 502/503/504 responses
            client: Optional preconfigured client
        """
        self.base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def invoke(self, method: str, payload: dict[str, Any]) -> Any:
        for attempt in range(self._max_retries):
            response = await self._client.post(
                "/invoke",
                json={"method": method, "payload": payload},
            )

            if response.status_code in {502, 503, 504} and attempt < self._max_retries - 1:
                wait_time = 0.1 * 2.0**attempt
                logger.warning(
                    "Host service %s returned %d, retrying in %.1fs",
                    self.base_url,
                    response.status_code,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
                continue

            if response.status_code != 200:
                raise ProviderError(
                    f"Host service returned {response.status_code}: {response.text[:200]}"
                )

            data = response.json()
            if data.get("error"):
                raise ProviderError(str(data["error"]))
            return data.get("result")

        raise ProviderError(f"Host service {self.base_url} failed after {self._max_retries} attempts")

    async def close(self) -> None:
        await self._client.aclose()


class NetworkCapabilityProvider:
    """Performs outbound HTTP requests on behalf of plugins.

    Destination checks and request counting happen in the gateway before the
    call reaches this provider.
    """

    ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"})

    def __init__(
        self,
        timeout: float = 30.0,
        max_response_bytes: int = 1_048_576,
        client: httpx.AsyncClient | None = None,
    ):
        self.max_response_bytes = max_response_bytes
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=False)

    async def invoke(self, method: str, payload: dict[str, Any]) -> Any:
        http_method = method.upper()
        if http_method not in self.ALLOWED_METHODS:
            raise ProviderError(f"Unsupported HTTP method '{method}'")

        url = payload.get("url")
        if not url:
            raise ProviderError("Payload requires 'url'")

        async with self._client.stream(
            http_method,
            url,
            params=payload.get("params"),
            json=payload.get("json"),
            headers=payload.get("headers"),
        ) as response:
            body, truncated = await self._read_capped(response)

        return {
            "status": response.status_code,
            "headers": dict(response.headers),
            "body": body.decode(response.encoding or "utf-8", errors="replace"),
            "truncated": truncated,
        }

    async def _read_capped(self, response: httpx.Response) -> tuple[bytes, bool]:
        """Read at most ``max_response_bytes`` of a streamed body."""
        chunks: list[bytes] = []
        size = 0
        async for chunk in response.aiter_bytes():
            remaining = self.max_response_bytes - size
            if len(chunk) > remaining:
                chunks.append(chunk[:remaining])
                return b"".join(chunks), True
            chunks.append(chunk)
            size += len(chunk)
        return b"".join(chunks), False

    async def close(self) -> None:
        await self._client.aclose()


def build_providers(config: GatewayConfig) -> dict[str, CapabilityProvider]:
    """Create the providers declared in the gateway configuration.

    Returns:
        Providers keyed by capability identifier
    """
    providers: dict[str, CapabilityProvider] = {
        capability: HttpCapabilityProvider(base_url, timeout=config.request_timeout)
        for capability, base_url in config.providers.items()
    }
    if config.network_enabled:
        providers.setdefault(
            "network.request", NetworkCapabilityProvider(timeout=config.request_timeout)
        )
    return providers
