# tests/conftest.py
import sys
import asyncio
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI, Request, Response

# --- Ensure project root is importable
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from post2post.config import Settings
from post2post.server import Post2PostServer
from post2post.web.runner import EmbeddedUvicorn

LOCALHOST = "127.0.0.1"


def make_settings(**overrides) -> Settings:
    """Settings for tests: loopback, ephemeral port, short timeouts, no .env."""
    values = dict(
        interface=LOCALHOST,
        port=0,
        default_timeout=5.0,
        send_timeout=5.0,
        trust_env=False,
        log_level="warning",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ---------- Peer apps used as round-trip destinations ----------
def silent_app() -> FastAPI:
    """Acknowledges every webhook and never calls back."""
    app = FastAPI()

    @app.post("/webhook")
    async def webhook(request: Request):
        await request.body()
        return {"status": "received"}

    return app


def failing_app(status_code: int = 500) -> FastAPI:
    app = FastAPI()

    @app.post("/webhook")
    async def webhook():
        return Response(status_code=status_code)

    return app


def capture_app() -> FastAPI:
    """Records every JSON body posted to /capture."""
    app = FastAPI()
    app.state.bodies = []
    app.state.received = asyncio.Event()

    @app.post("/capture")
    async def capture(request: Request):
        app.state.bodies.append(await request.json())
        app.state.received.set()
        return {"ok": True}

    return app


async def wait_for_capture(app: FastAPI, count: int = 1, timeout: float = 5.0) -> list:
    async def _poll():
        while len(app.state.bodies) < count:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)
    return app.state.bodies


# ---------- Fixtures ----------
@pytest_asyncio.fixture
async def start_server():
    """Factory fixture: start Post2PostServer instances, stopped on teardown."""
    started = []

    async def _start(settings: Settings = None, **kwargs) -> Post2PostServer:
        server = Post2PostServer(settings or make_settings(), **kwargs)
        await server.start()
        started.append(server)
        return server

    yield _start

    for server in started:
        if server.is_running:
            await server.stop()


@pytest_asyncio.fixture
async def serve_app():
    """Factory fixture: serve an arbitrary ASGI app, return its base URL."""
    runners = []

    async def _serve(app) -> str:
        runner = EmbeddedUvicorn(app, host=LOCALHOST)
        await runner.start()
        runners.append(runner)
        return f"http://{LOCALHOST}:{runner.port}"

    yield _serve

    for runner in runners:
        await runner.stop()


@pytest_asyncio.fixture
async def echo_pair(start_server):
    """A client server whose destination is a peer with no processor (echo)."""
    peer = await start_server()
    client = await start_server(make_settings(post_url=f"{peer.url}/webhook"))
    return client, peer


@pytest.fixture
def settings() -> Settings:
    return make_settings()
