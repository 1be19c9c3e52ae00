# post2post/web/webhook.py
from __future__ import annotations

from typing import Any, Optional
import logging

import httpx
from fastapi import APIRouter, Request, HTTPException
from pydantic import ValidationError

from post2post.channels.transport import TransportSelector
from post2post.common.errors import ConfigurationError, classify_exception
from post2post.common.tracing import bind_request_id
from post2post.core.models import CallbackEnvelope, ProcessorContext, RoundTripEnvelope
from post2post.processors import Processor, run_processor
from post2post.web import metrics as metrics_mod
from post2post.web.tasks import TaskSupervisor

router = APIRouter()
logger = logging.getLogger("post2post.webhook")


def process_payload(
    processor: Optional[Processor], envelope: RoundTripEnvelope, ctx: ProcessorContext
) -> Any:
    """
    Run the configured processor, or echo the payload when there is none.
    A failing processor yields an error-shaped payload instead of raising.
    """
    if processor is None:
        return envelope.payload
    try:
        return run_processor(processor, envelope.payload, ctx)
    except Exception as e:  # noqa: BLE001
        logger.warning(
            "processor %s failed for %s: %s",
            type(processor).__name__, envelope.request_id, e,
        )
        return {
            "error": str(e),
            "request_id": envelope.request_id or "",
            "processor": type(processor).__name__,
            "status": "error",
        }


async def deliver_processed(
    transport: TransportSelector,
    callback_url: str,
    request_id: str,
    payload: Any,
    tailnet_key: str = "",
) -> bool:
    """Best-effort POST of a processed result back to the caller."""
    body = CallbackEnvelope(
        request_id=request_id,
        payload=payload,
        tailnet_key=tailnet_key or None,
    ).to_wire()
    try:
        resp = await transport.post_json(callback_url, body, secure_key=tailnet_key)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        code, _ = classify_exception(e)
        outcome = "invalid_url" if code == ConfigurationError.code else "transport_error"
        metrics_mod.WEBHOOK_DELIVERY_TOTAL.labels(outcome=outcome).inc()
        logger.warning("callback delivery to %s failed: %s", callback_url, e)
        return False

    if not resp.is_success:
        metrics_mod.WEBHOOK_DELIVERY_TOTAL.labels(outcome="http_error").inc()
        logger.warning(
            "callback delivery to %s rejected with %d (request_id=%s)",
            callback_url, resp.status_code, request_id,
        )
        return False

    metrics_mod.WEBHOOK_DELIVERY_TOTAL.labels(outcome="ok").inc()
    logger.info("callback delivered to %s (request_id=%s)", callback_url, request_id)
    return True


async def _process_and_deliver(
    processor: Optional[Processor],
    transport: TransportSelector,
    envelope: RoundTripEnvelope,
    ctx: ProcessorContext,
) -> None:
    # processing
    result = process_payload(processor, envelope, ctx)

    # delivering
    if not envelope.url:
        metrics_mod.WEBHOOK_DELIVERY_TOTAL.labels(outcome="skipped").inc()
        logger.info("no callback url for %s; result dropped", envelope.request_id)
        return
    await deliver_processed(
        transport,
        envelope.url,
        envelope.request_id or "",
        result,
        envelope.tailnet_key or "",
    )


@router.post("/webhook")
async def webhook(request: Request):
    """
    Accept a payload, acknowledge at once, then process it and post the
    result to the supplied callback url in a supervised background task.
    """
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="invalid json")

    try:
        envelope = RoundTripEnvelope.model_validate(body)
    except ValidationError:
        raise HTTPException(status_code=400, detail="invalid webhook body")

    ctx = ProcessorContext(
        request_id=envelope.request_id or "",
        url=envelope.url,
        tailnet_key=envelope.tailnet_key or "",
    )

    tasks: TaskSupervisor = request.app.state.tasks
    with bind_request_id(envelope.request_id):
        tasks.spawn(
            _process_and_deliver(
                request.app.state.processor,
                request.app.state.transport,
                envelope,
                ctx,
            ),
            name=f"webhook-{envelope.request_id or 'anonymous'}",
        )
        logger.info("webhook received", extra={"callback_url": envelope.url})
    return {"status": "received", "message": "Processing request"}
