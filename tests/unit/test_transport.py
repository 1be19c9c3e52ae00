# tests/unit/test_transport.py
import asyncio
import socket

import httpx
import pytest

from post2post.channels.transport import TailnetProxyProvider, TransportSelector, mask_key
from post2post.common.errors import SecureTransportError
from post2post.config import Settings


def _closed_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def _settings(**kw) -> Settings:
    return Settings(_env_file=None, send_timeout=7.0, **kw)


class RecordingProvider:
    def __init__(self):
        self.credentials = []

    async def establish_client(self, credential):
        self.credentials.append(credential)
        return httpx.AsyncClient(headers={"X-Secure": "yes"})


class BrokenProvider:
    async def establish_client(self, credential):
        raise SecureTransportError("overlay session failed")


@pytest.mark.asyncio
async def test_empty_key_returns_plain_client_without_touching_provider():
    provider = RecordingProvider()
    selector = TransportSelector(_settings(), provider)
    client = await selector.select("")
    try:
        assert provider.credentials == []
        assert "X-Secure" not in client.headers
        assert client.timeout.read == 7.0
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_secure_key_uses_provider_client():
    provider = RecordingProvider()
    selector = TransportSelector(_settings(), provider)
    client = await selector.select("tskey-good")
    try:
        assert provider.credentials == ["tskey-good"]
        assert client.headers["X-Secure"] == "yes"
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_provider_failure_falls_back_to_plain_client(caplog):
    selector = TransportSelector(_settings(), BrokenProvider())
    with caplog.at_level("WARNING", logger="post2post.transport"):
        client = await selector.select("tskey-bad")
    try:
        assert "X-Secure" not in client.headers
        assert client.timeout.read == 7.0
    finally:
        await client.aclose()
    assert "falling back to plain HTTP" in caplog.text


@pytest.mark.asyncio
async def test_tailnet_provider_requires_proxy():
    provider = TailnetProxyProvider("")
    with pytest.raises(SecureTransportError):
        await provider.establish_client("tskey-abc")


@pytest.mark.asyncio
async def test_tailnet_provider_rejects_malformed_key():
    provider = TailnetProxyProvider("http://127.0.0.1:1055")
    with pytest.raises(SecureTransportError) as exc:
        await provider.establish_client("not-a-tailnet-key-at-all")
    assert "not-a-tailnet-key-at-all" not in str(exc.value)


@pytest.mark.asyncio
async def test_tailnet_provider_builds_proxied_client():
    proxy = await asyncio.start_server(lambda reader, writer: writer.close(), "127.0.0.1", 0)
    port = proxy.sockets[0].getsockname()[1]
    try:
        provider = TailnetProxyProvider(f"http://127.0.0.1:{port}", timeout=3.0)
        client = await provider.establish_client("tskey-abc123")
        try:
            assert client.headers["X-Tailnet-Key"] == "tskey-abc123"
            assert client.timeout.read == 3.0
        finally:
            await client.aclose()
    finally:
        proxy.close()
        await proxy.wait_closed()


@pytest.mark.asyncio
async def test_tailnet_provider_refuses_when_proxy_is_down():
    provider = TailnetProxyProvider(f"http://127.0.0.1:{_closed_port()}", session_timeout=2.0)
    with pytest.raises(SecureTransportError) as exc:
        await provider.establish_client("tskey-abc123")
    assert "unreachable" in str(exc.value)


@pytest.mark.asyncio
async def test_selector_falls_back_when_proxy_is_down(caplog):
    selector = TransportSelector(_settings(tailnet_proxy_url=f"http://127.0.0.1:{_closed_port()}"))
    with caplog.at_level("WARNING", logger="post2post.transport"):
        client = await selector.select("tskey-abc123")
    try:
        assert "X-Tailnet-Key" not in client.headers
    finally:
        await client.aclose()
    assert "falling back to plain HTTP" in caplog.text


@pytest.mark.asyncio
async def test_default_selector_falls_back_when_no_proxy_configured():
    selector = TransportSelector(_settings())
    client = await selector.select("tskey-anything")
    try:
        assert "X-Tailnet-Key" not in client.headers
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_post_json_sends_json_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = request.content
        seen["content_type"] = request.headers["content-type"]
        return httpx.Response(200)

    class MockTransportSelector(TransportSelector):
        def default_client(self):
            return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    selector = MockTransportSelector(_settings())
    resp = await selector.post_json("http://peer/webhook", {"a": 1})
    assert resp.status_code == 200
    assert seen["content_type"] == "application/json"
    assert seen["body"].replace(b" ", b"") == b'{"a":1}'


def test_mask_key():
    assert mask_key("") == ""
    assert mask_key("short") == "short..."
    assert mask_key("tskey-0123456789") == "tskey-0123..."
