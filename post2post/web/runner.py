# post2post/web/runner.py
from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from typing import Any, Optional

import uvicorn

logger = logging.getLogger("post2post.runner")

STARTUP_TIMEOUT_SEC = 10.0


class _EmbeddedServer(uvicorn.Server):
    """uvicorn.Server that leaves process signal handling to the host program."""

    def install_signal_handlers(self) -> None:  # uvicorn < 0.29
        pass

    @contextlib.contextmanager
    def capture_signals(self):  # uvicorn >= 0.29
        yield


def bind_socket(network: str = "tcp4", host: str = "", port: int = 0) -> socket.socket:
    """Bind a listening TCP socket on the given family; port 0 picks a free one."""
    family = socket.AF_INET6 if network == "tcp6" else socket.AF_INET
    if not host:
        host = "::" if family == socket.AF_INET6 else "0.0.0.0"
    sock = socket.socket(family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.listen(128)
    sock.setblocking(False)
    return sock


class EmbeddedUvicorn:
    """Serve an ASGI app on a pre-bound socket inside the current event loop."""

    def __init__(
        self,
        app: Any,
        *,
        network: str = "tcp4",
        host: str = "",
        port: int = 0,
        log_level: str = "warning",
    ):
        self.app = app
        self.network = network
        self.host = host
        self.requested_port = port
        self.log_level = log_level
        self._sock: Optional[socket.socket] = None
        self._port = 0
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def port(self) -> int:
        return self._port

    async def start(self) -> int:
        self._sock = bind_socket(self.network, self.host, self.requested_port)
        self._port = self._sock.getsockname()[1]
        config = uvicorn.Config(
            self.app,
            log_level=self.log_level.lower(),
            access_log=False,
            lifespan="on",
            timeout_graceful_shutdown=5,
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(
            self._server.serve(sockets=[self._sock]), name=f"uvicorn-{self.port}"
        )

        deadline = asyncio.get_running_loop().time() + STARTUP_TIMEOUT_SEC
        while not self._server.started:
            if self._task.done():
                exc = self._task.exception()
                self._sock.close()
                raise RuntimeError(f"server failed to start: {exc}")
            if asyncio.get_running_loop().time() > deadline:
                await self.stop()
                raise RuntimeError("server did not start in time")
            await asyncio.sleep(0.01)

        logger.info("serving on %s port %d", self.network, self.port)
        return self.port

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        if self._sock is not None:
            self._sock.close()
        self._sock = None
        self._server = None
        self._task = None
