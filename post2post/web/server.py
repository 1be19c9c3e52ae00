# post2post/web/server.py
# ---------------------------------------------------------------------------
# post2post web application factory + standalone entrypoint
# ---------------------------------------------------------------------------
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from post2post.channels.transport import TransportSelector
from post2post.config import Settings
from post2post.core.registry import CorrelationRegistry
from post2post.processors import Processor, build_processor
from post2post.web import metrics
from post2post.web.callback import router as callback_router
from post2post.web.middleware import setup_middleware
from post2post.web.tasks import TaskSupervisor
from post2post.web.webhook import router as webhook_router

logger = logging.getLogger("post2post.server")


def processor_from_settings(settings: Settings) -> Optional[Processor]:
    return build_processor(
        settings.processor,
        required_fields=settings.processor_required_fields,
        service_name=settings.service_name,
    )


# ---------------------------------------------------------------------------
# Application Factory
# ---------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    registry: Optional[CorrelationRegistry] = None,
    processor: Optional[Processor] = None,
    transport: Optional[TransportSelector] = None,
    owner: Any = None,
) -> FastAPI:
    """
    Build the FastAPI app with /roundtrip, /webhook, info, health and metrics.

    `owner` is the Post2PostServer hosting this app, if any; it supplies the
    live port for the info page.
    """
    settings = settings or Settings()
    if processor is None:
        processor = processor_from_settings(settings)
    tasks = TaskSupervisor()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await tasks.shutdown()

    app = FastAPI(title="post2post", lifespan=lifespan)

    setup_middleware(app)

    app.include_router(callback_router)
    app.include_router(webhook_router)
    app.include_router(metrics.router)

    app.state.settings = settings
    app.state.registry = registry if registry is not None else CorrelationRegistry()
    app.state.processor = processor
    app.state.transport = transport or TransportSelector(settings)
    app.state.tasks = tasks
    app.state.owner = owner

    @app.get("/", response_class=PlainTextResponse)
    def info(request: Request):
        port = owner.port if owner is not None else settings.port
        iface = settings.interface or "localhost"
        return (
            "post2post server\n"
            f"Listening on: {iface}:{port}\n"
            f"Network: {settings.network}\n"
            f"Path: {request.url.path}\n"
        )

    @app.get("/healthz")
    def healthz(request: Request):
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "in_flight": len(request.app.state.registry),
        }

    return app


# ---------------------------------------------------------------------------
# Standalone entrypoint
# ---------------------------------------------------------------------------
def main() -> None:
    import uvicorn
    from dotenv import load_dotenv, find_dotenv

    from post2post.common.tracing import setup_logging
    from post2post.web.runner import bind_socket

    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path, override=False)

    settings = Settings()
    setup_logging(settings.log_level)
    if dotenv_path:
        logger.info("loaded environment from %s", dotenv_path)

    app = create_app(settings)
    sock = bind_socket(settings.network, settings.interface, settings.port)
    settings.port = sock.getsockname()[1]
    logger.info(
        "post2post starting on %s network, interface: %s, port: %d",
        settings.network, settings.interface or "localhost", settings.port,
    )
    logger.info("available routes: /, /roundtrip, /webhook, /healthz, /metrics")
    config = uvicorn.Config(app, log_level=settings.log_level.lower())
    uvicorn.Server(config).run(sockets=[sock])


if __name__ == "__main__":
    main()
