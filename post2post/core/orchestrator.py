# post2post/core/orchestrator.py
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from typing import Any, Optional, Protocol

import httpx

from post2post.channels.transport import TransportSelector
from post2post.common.errors import (
    ConfigurationError,
    CorrelationError,
    InvalidPayloadError,
    TransportError,
    classify_exception,
)
from post2post.common.tracing import bind_request_id
from post2post.config import Settings
from post2post.core.models import RoundTripEnvelope, RoundTripResult
from post2post.core.registry import CorrelationRegistry
from post2post.web import metrics as metrics_mod

logger = logging.getLogger("post2post.orchestrator")

CALLBACK_PATH = "/roundtrip"

_sequence = itertools.count(1)


def new_request_id() -> str:
    """Process-unique correlation key; not meant to be unguessable."""
    return f"req_{time.time_ns()}_{next(_sequence)}"


class LocalEndpoint(Protocol):
    """The local server as seen by the orchestrator."""

    @property
    def url(self) -> str:
        ...

    @property
    def is_running(self) -> bool:
        ...


class RoundTripOrchestrator:
    """
    Sends envelopes to the configured peer and, for round trips, waits for
    the peer's answer to arrive on this process's /roundtrip endpoint.
    """

    def __init__(
        self,
        settings: Settings,
        registry: CorrelationRegistry,
        transport: TransportSelector,
        endpoint: LocalEndpoint,
    ):
        self.settings = settings
        self.registry = registry
        self.transport = transport
        self.endpoint = endpoint

    def _ready(self) -> str:
        """Return the destination URL, or raise if a call can't be attempted."""
        post_url = self.settings.post_url
        if not post_url:
            raise ConfigurationError("post URL not configured")
        if not self.endpoint.is_running:
            raise ConfigurationError("server is not running")
        return post_url

    @staticmethod
    def _encode(envelope: RoundTripEnvelope) -> dict:
        body = envelope.to_wire()
        try:
            json.dumps(body)
        except (TypeError, ValueError) as e:
            raise InvalidPayloadError(f"failed to marshal JSON: {e}") from e
        return body

    async def post_json(self, payload: Any, secure_key: str = "") -> None:
        """
        Fire-and-forget: post `payload` with this server's base URL attached.
        Raises ConfigurationError, InvalidPayloadError or TransportError.
        """
        post_url = self._ready()
        body = self._encode(
            RoundTripEnvelope(
                url=self.endpoint.url,
                payload=payload,
                tailnet_key=secure_key or None,
            )
        )
        try:
            resp = await self.transport.post_json(post_url, body, secure_key=secure_key)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            code, _ = classify_exception(e)
            if code == ConfigurationError.code:
                raise ConfigurationError(f"invalid post URL: {e}") from e
            raise TransportError(f"failed to post JSON: {e}") from e
        if not resp.is_success:
            raise TransportError(f"post request failed with status: {resp.status_code}")

    async def round_trip_post(
        self,
        payload: Any,
        secure_key: str = "",
        timeout: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> RoundTripResult:
        """
        Post `payload` and wait for the correlated callback.

        Never raises for expected failures; the result carries success,
        timed_out, error and error_code instead. Pass `request_id` to key the
        call yourself (e.g. for caller-driven retries); otherwise a fresh one
        is generated.
        """
        start = time.monotonic()
        rid = request_id or new_request_id()
        with bind_request_id(rid):
            result = await self._round_trip(payload, secure_key, timeout, rid)
        outcome = "success" if result.success else (result.error_code or "error")
        metrics_mod.ROUNDTRIP_TOTAL.labels(outcome=outcome).inc()
        metrics_mod.ROUNDTRIP_LATENCY.observe(time.monotonic() - start)
        return result

    async def _round_trip(
        self,
        payload: Any,
        secure_key: str,
        timeout: Optional[float],
        rid: str,
    ) -> RoundTripResult:
        try:
            post_url = self._ready()
        except ConfigurationError as e:
            logger.warning("round trip not attempted: %s", e)
            return RoundTripResult.failure(str(e), code=e.code)

        wait_for = self.settings.default_timeout if timeout is None else timeout

        try:
            channel = self.registry.register(rid)
        except CorrelationError as e:
            logger.warning("round trip not attempted: %s", e)
            return RoundTripResult.failure(str(e), code=e.code, request_id=rid)

        metrics_mod.ROUNDTRIP_IN_FLIGHT.inc()
        try:
            try:
                body = self._encode(
                    RoundTripEnvelope(
                        url=f"{self.endpoint.url}{CALLBACK_PATH}",
                        payload=payload,
                        request_id=rid,
                        tailnet_key=secure_key or None,
                    )
                )
            except InvalidPayloadError as e:
                return RoundTripResult.failure(str(e), code=e.code, request_id=rid)

            logger.info("sending round trip %s to %s", rid, post_url)
            try:
                resp = await self.transport.post_json(post_url, body, secure_key=secure_key)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                code, retryable = classify_exception(e)
                logger.warning(
                    "round trip %s send failed (%s, retryable=%s): %s", rid, code, retryable, e
                )
                return RoundTripResult.failure(
                    f"failed to post JSON: {e}", code=code, request_id=rid
                )

            if not resp.is_success:
                logger.warning("round trip %s rejected with status %d", rid, resp.status_code)
                return RoundTripResult.failure(
                    f"post request failed with status: {resp.status_code}",
                    code=TransportError.code,
                    request_id=rid,
                )

            logger.debug("round trip %s acknowledged; waiting up to %.1fs", rid, wait_for)
            try:
                result = await channel.wait(wait_for)
            except asyncio.TimeoutError:
                logger.warning("round trip %s timed out after %.1fs", rid, wait_for)
                return RoundTripResult.for_timeout(rid)

            logger.info("round trip %s resolved", rid)
            return result
        finally:
            self.registry.unregister(rid)
            metrics_mod.ROUNDTRIP_IN_FLIGHT.dec()
