# post2post/common/errors.py
from __future__ import annotations
from typing import Tuple

import httpx

# ---- Canonical error classes ------------------------------------------------

class Post2PostError(Exception):
    code: str = "unknown"
    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message)

class ConfigurationError(Post2PostError):
    code, retryable = "configuration", False

class TransportError(Post2PostError):
    code, retryable = "transport", True

class SecureTransportError(TransportError):
    code, retryable = "secure_transport", True

class RoundTripTimeout(Post2PostError):
    code, retryable = "timeout", True

class CorrelationError(Post2PostError):
    code, retryable = "correlation", False

class DuplicateRequestError(CorrelationError):
    """A request ID was registered while an earlier round trip still holds it."""

class InvalidPayloadError(Post2PostError):
    code, retryable = "invalid_payload", False

class ProcessingError(Post2PostError):
    code, retryable = "processing", False


# ---- Helpers used by the orchestrator and webhook path ----------------------

def classify_exception(exc: BaseException) -> Tuple[str, bool]:
    """
    Return (code, retryable) for any exception.
    If it's a Post2PostError subclass, use its metadata.
    A malformed httpx URL is a configuration error, other httpx failures are
    transport errors; anything else is a best-effort guess.
    """
    if isinstance(exc, Post2PostError):
        return exc.code, exc.retryable

    if isinstance(exc, httpx.InvalidURL):
        return ConfigurationError.code, ConfigurationError.retryable
    if isinstance(exc, httpx.TimeoutException):
        return "transport", True
    if isinstance(exc, httpx.HTTPError):
        return "transport", True

    name = exc.__class__.__name__.lower()
    msg = str(exc).lower()

    if "timeout" in name or "timed out" in msg:
        return "timeout", True
    if any(k in msg for k in ["connection refused", "connection reset", "dns", "ssl", "socket"]):
        return "transport", True

    return "processing", False


def is_retryable(exc: BaseException) -> bool:
    _, retry = classify_exception(exc)
    return retry
