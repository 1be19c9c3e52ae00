# post2post/server.py
from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from post2post.channels.transport import SecureTransportProvider, TransportSelector
from post2post.common.errors import ConfigurationError
from post2post.config import Settings
from post2post.core.models import RoundTripResult
from post2post.core.orchestrator import RoundTripOrchestrator
from post2post.core.registry import CorrelationRegistry
from post2post.processors import Processor
from post2post.web.runner import EmbeddedUvicorn
from post2post.web.server import create_app

logger = logging.getLogger("post2post.local")


class Post2PostServer:
    """
    A local HTTP server plus the client side of the round trip.

        server = Post2PostServer(Settings(post_url="http://peer:8080/webhook"))
        await server.start()
        result = await server.round_trip_post({"hello": "world"})
        await server.stop()

    Everything is configured through the Settings passed in; there is no
    module-level server state.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        processor: Optional[Processor] = None,
        secure_provider: Optional[SecureTransportProvider] = None,
    ):
        self.settings = settings or Settings()
        self.registry = CorrelationRegistry()
        self.transport = TransportSelector(self.settings, secure_provider)
        self.app = create_app(
            self.settings,
            registry=self.registry,
            processor=processor,
            transport=self.transport,
            owner=self,
        )
        self.orchestrator = RoundTripOrchestrator(
            self.settings, self.registry, self.transport, self
        )
        self._lock = threading.Lock()
        self._running = False
        self._runner: Optional[EmbeddedUvicorn] = None

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        with self._lock:
            if self._running or self._runner is not None:
                raise ConfigurationError("server is already running")
            runner = EmbeddedUvicorn(
                self.app,
                network=self.settings.network,
                host=self.settings.interface,
                port=self.settings.port,
                log_level=self.settings.log_level,
            )
            self._runner = runner

        try:
            await runner.start()
        except Exception:
            with self._lock:
                self._runner = None
            raise

        with self._lock:
            self._running = True
        logger.info("server listening on %s (%s)", self.url, self.settings.network)

    async def stop(self) -> None:
        with self._lock:
            if not self._running:
                raise ConfigurationError("server is not running")
            self._running = False
            runner, self._runner = self._runner, None
        if runner is not None:
            await runner.stop()
        logger.info("server stopped")

    async def __aenter__(self) -> "Post2PostServer":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self.is_running:
            await self.stop()

    # ------------------------------------------------------------------
    # introspection
    # ------------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def port(self) -> int:
        with self._lock:
            runner = self._runner
        return runner.port if runner is not None else 0

    @property
    def interface(self) -> str:
        return self.settings.interface or "localhost"

    @property
    def network(self) -> str:
        return self.settings.network

    @property
    def url(self) -> str:
        """Base URL peers use to reach this server."""
        if self.settings.public_url:
            return self.settings.public_url.rstrip("/")
        host = self.interface
        if ":" in host:
            host = f"[{host}]"
        return f"http://{host}:{self.port}"

    @property
    def post_url(self) -> str:
        return self.settings.post_url

    @post_url.setter
    def post_url(self, value: str) -> None:
        with self._lock:
            self.settings.post_url = value

    # ------------------------------------------------------------------
    # outbound
    # ------------------------------------------------------------------
    async def post_json(self, payload: Any, secure_key: str = "") -> None:
        await self.orchestrator.post_json(payload, secure_key)

    async def round_trip_post(
        self,
        payload: Any,
        secure_key: str = "",
        timeout: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> RoundTripResult:
        return await self.orchestrator.round_trip_post(
            payload, secure_key=secure_key, timeout=timeout, request_id=request_id
        )
