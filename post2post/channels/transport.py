# post2post/channels/transport.py
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

import httpx

from post2post.common.errors import SecureTransportError
from post2post.config import Settings

__all__ = [
    "SecureTransportProvider",
    "TailnetProxyProvider",
    "TransportSelector",
    "mask_key",
]

logger = logging.getLogger("post2post.transport")

TAILNET_KEY_PREFIX = "tskey-"


def mask_key(key: str, keep: int = 10) -> str:
    """Short, log-safe prefix of a credential."""
    if not key:
        return ""
    return key[:min(len(key), keep)] + "..."


class SecureTransportProvider(Protocol):
    """Anything that can turn a secure-network credential into an HTTP client."""

    async def establish_client(self, credential: str) -> httpx.AsyncClient:
        ...


class TailnetProxyProvider:
    """
    Route requests through a local Tailscale userspace HTTP proxy
    (tailscaled --outbound-http-proxy-listen).

    The overlay session itself is owned by tailscaled. Before a client is
    handed out the credential shape is checked and the proxy must accept a
    connection within `session_timeout`; otherwise SecureTransportError.
    """

    def __init__(self, proxy_url: str, *, timeout: float = 30.0, session_timeout: float = 5.0):
        self.proxy_url = proxy_url
        self.timeout = timeout
        self.session_timeout = session_timeout

    async def _check_session(self) -> None:
        try:
            url = httpx.URL(self.proxy_url)
        except httpx.InvalidURL as e:
            raise SecureTransportError(f"invalid tailnet proxy URL: {e}") from e
        if not url.host:
            raise SecureTransportError(f"invalid tailnet proxy URL: {self.proxy_url}")
        port = url.port or (443 if url.scheme == "https" else 80)
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(url.host, port), self.session_timeout
            )
        except asyncio.TimeoutError as e:
            raise SecureTransportError(
                f"tailnet proxy {self.proxy_url} did not answer within {self.session_timeout}s"
            ) from e
        except OSError as e:
            raise SecureTransportError(f"tailnet proxy {self.proxy_url} unreachable: {e}") from e
        writer.close()

    async def establish_client(self, credential: str) -> httpx.AsyncClient:
        if not self.proxy_url:
            raise SecureTransportError("tailnet proxy URL not configured")
        if not credential.startswith(TAILNET_KEY_PREFIX):
            raise SecureTransportError(f"malformed tailnet key: {mask_key(credential)}")
        await self._check_session()
        return httpx.AsyncClient(
            proxy=self.proxy_url,
            timeout=self.timeout,
            headers={"X-Tailnet-Key": credential},
        )


class TransportSelector:
    """
    Pick an HTTP client for one outbound POST.

    An empty key yields the plain client. A non-empty key goes to the secure
    provider; any failure there falls back to the plain client.
    The caller owns the returned client and must close it.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        provider: Optional[SecureTransportProvider] = None,
    ):
        self.settings = settings or Settings()
        if provider is None:
            provider = TailnetProxyProvider(
                self.settings.tailnet_proxy_url, timeout=self.settings.send_timeout
            )
        self.provider = provider

    def default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.send_timeout,
            trust_env=self.settings.trust_env,
        )

    async def select(self, secure_key: str = "") -> httpx.AsyncClient:
        if not secure_key:
            return self.default_client()
        try:
            client = await self.provider.establish_client(secure_key)
            logger.info("using secure transport (key %s)", mask_key(secure_key))
            return client
        except Exception as e:  # noqa: BLE001
            logger.warning(
                "secure transport unavailable, falling back to plain HTTP: %s", e
            )
            return self.default_client()

    async def post_json(self, url: str, body: dict, secure_key: str = "") -> httpx.Response:
        """POST `body` as JSON through whichever client `select` picks."""
        client = await self.select(secure_key)
        async with client:
            return await client.post(
                url,
                json=body,
                headers={"Content-Type": "application/json"},
            )
