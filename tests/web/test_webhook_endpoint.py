# tests/web/test_webhook_endpoint.py
import threading

import httpx
import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from conftest import make_settings
from post2post.channels.transport import TransportSelector
from post2post.core.models import ProcessorContext, RoundTripEnvelope
from post2post.processors import EchoProcessor
from post2post.web.server import create_app
from post2post.web.webhook import deliver_processed, process_payload


class RecordingProcessor:
    def __init__(self):
        self.calls = []
        self.called = threading.Event()

    def process(self, payload, request_id):
        self.calls.append((payload, request_id))
        self.called.set()
        return payload


def test_webhook_acknowledges_immediately():
    processor = RecordingProcessor()
    app = create_app(make_settings(), processor=processor)
    with TestClient(app) as client:
        r = client.post("/webhook", json={"payload": {"a": 1}, "request_id": "w-1"})
        assert r.status_code == 200
        assert r.json() == {"status": "received", "message": "Processing request"}

        assert processor.called.wait(5.0)
    assert processor.calls == [({"a": 1}, "w-1")]


def test_webhook_rejects_malformed_json():
    app = create_app(make_settings())
    with TestClient(app) as client:
        r = client.post(
            "/webhook", content=b"{nope", headers={"Content-Type": "application/json"}
        )
        assert r.status_code == 400


def test_webhook_rejects_non_object_body():
    app = create_app(make_settings())
    with TestClient(app) as client:
        r = client.post("/webhook", json="just a string")
        assert r.status_code == 400


def test_webhook_get_not_allowed():
    app = create_app(make_settings())
    with TestClient(app) as client:
        assert client.get("/webhook").status_code == 405


def test_processor_selected_from_settings():
    app = create_app(make_settings(processor="echo"))
    assert isinstance(app.state.processor, EchoProcessor)


# ---- process_payload --------------------------------------------------------

def _env(payload, rid="p-1"):
    return RoundTripEnvelope(url="http://cb", payload=payload, request_id=rid)


def test_default_processing_is_identity():
    env = _env({"a": 1})
    assert process_payload(None, env, ProcessorContext(request_id="p-1")) == {"a": 1}


def test_processor_failure_becomes_error_payload():
    class Exploding:
        def process(self, payload, request_id):
            raise ValueError("cannot handle this")

    out = process_payload(Exploding(), _env({"a": 1}), ProcessorContext(request_id="p-1"))
    assert out["status"] == "error"
    assert out["error"] == "cannot handle this"
    assert out["request_id"] == "p-1"
    assert out["processor"] == "Exploding"


# ---- callback delivery ------------------------------------------------------

def _delivery_count(outcome: str) -> float:
    return REGISTRY.get_sample_value(
        "post2post_webhook_delivery_total", {"outcome": outcome}
    ) or 0.0


def _selector(handler) -> TransportSelector:
    class MockTransportSelector(TransportSelector):
        def default_client(self):
            return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return MockTransportSelector(make_settings())


@pytest.mark.asyncio
async def test_delivery_to_malformed_callback_url_is_counted_not_raised():
    selector = _selector(lambda request: httpx.Response(200))
    before = _delivery_count("invalid_url")

    delivered = await deliver_processed(selector, "http://[::1/roundtrip", "d-1", {"a": 1})

    assert delivered is False
    assert _delivery_count("invalid_url") == before + 1


@pytest.mark.asyncio
async def test_delivery_redirect_is_not_success():
    selector = _selector(
        lambda request: httpx.Response(302, headers={"Location": "http://elsewhere/"})
    )
    before_ok = _delivery_count("ok")
    before_err = _delivery_count("http_error")

    delivered = await deliver_processed(selector, "http://caller/roundtrip", "d-2", {"a": 1})

    assert delivered is False
    assert _delivery_count("http_error") == before_err + 1
    assert _delivery_count("ok") == before_ok
