# post2post/core/models.py
from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from post2post.common.errors import RoundTripTimeout


# --------------------------------------------------------------------
# Wire envelopes
# --------------------------------------------------------------------
class RoundTripEnvelope(BaseModel):
    """
    Outbound message sent to a remote peer, and the body accepted by /webhook.

    `url` is where the peer should post its answer; for a round trip it is the
    sender's own base URL + /roundtrip.
    """

    url: str = ""
    payload: Any = None
    request_id: Optional[str] = None
    tailnet_key: Optional[str] = None

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)


class CallbackEnvelope(BaseModel):
    """Body posted by a peer to /roundtrip."""

    request_id: str
    payload: Any = None
    tailnet_key: Optional[str] = None

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)


# --------------------------------------------------------------------
# Results
# --------------------------------------------------------------------
class RoundTripResult(BaseModel):
    """Outcome of one round_trip_post call."""

    model_config = ConfigDict(populate_by_name=True)

    payload: Any = None
    success: bool = False
    error: str = ""
    timed_out: bool = Field(default=False, alias="timeout")
    request_id: str = ""
    error_code: str = ""

    @classmethod
    def failure(cls, error: str, *, code: str, request_id: str = "") -> "RoundTripResult":
        return cls(success=False, error=error, error_code=code, request_id=request_id)

    @classmethod
    def for_timeout(cls, request_id: str) -> "RoundTripResult":
        return cls(
            success=False,
            timed_out=True,
            error="timeout waiting for response",
            error_code=RoundTripTimeout.code,
            request_id=request_id,
        )


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    NOT_FOUND = "not_found"
    GONE = "gone"


# --------------------------------------------------------------------
# Processor context
# --------------------------------------------------------------------
class ProcessorContext(BaseModel):
    """What a context-aware processor learns about the inbound webhook."""

    request_id: str = ""
    url: str = ""
    tailnet_key: str = ""
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
