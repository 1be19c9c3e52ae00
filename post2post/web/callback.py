# post2post/web/callback.py
from fastapi import APIRouter, Request, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
import logging

from post2post.common.tracing import bind_request_id
from post2post.core.models import CallbackEnvelope, DeliveryOutcome, RoundTripResult
from post2post.core.orchestrator import CALLBACK_PATH
from post2post.core.registry import CorrelationRegistry
from post2post.web import metrics as metrics_mod

router = APIRouter()
logger = logging.getLogger("post2post.callback")


@router.post(CALLBACK_PATH)
async def roundtrip_callback(request: Request):
    """
    Receives a peer's answer for an earlier round trip and hands it to the
    waiting caller. No transformation happens here.
    """
    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="invalid json")

    try:
        envelope = CallbackEnvelope.model_validate(body)
    except ValidationError:
        logger.warning("callback body missing request_id")
        raise HTTPException(status_code=400, detail="invalid callback body")

    registry: CorrelationRegistry = request.app.state.registry
    with bind_request_id(envelope.request_id):
        outcome = registry.deliver(
            envelope.request_id,
            RoundTripResult(
                payload=envelope.payload,
                success=True,
                request_id=envelope.request_id,
            ),
        )
        metrics_mod.CALLBACK_TOTAL.labels(outcome=outcome.value).inc()

        if outcome is DeliveryOutcome.NOT_FOUND:
            raise HTTPException(status_code=404, detail="unknown request_id")
        if outcome is DeliveryOutcome.GONE:
            raise HTTPException(status_code=410, detail="request already resolved")

        logger.info("callback delivered for %s", envelope.request_id)
    return PlainTextResponse("Response received")
