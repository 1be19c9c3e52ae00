# post2post/processors.py
"""
Payload processors for the /webhook endpoint.

A processor is anything with `process(payload, request_id)`. Processors that
also define `process_with_context(payload, ctx)` receive the full
ProcessorContext instead. Raising signals failure.
"""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from post2post.channels.transport import mask_key
from post2post.common.errors import ConfigurationError, ProcessingError
from post2post.core.models import ProcessorContext

__all__ = [
    "Processor",
    "ContextProcessor",
    "HelloWorldProcessor",
    "EchoProcessor",
    "TimestampProcessor",
    "CounterProcessor",
    "AdvancedContextProcessor",
    "TransformProcessor",
    "ValidatorProcessor",
    "ChainProcessor",
    "run_processor",
    "build_processor",
    "PROCESSORS",
]

TS_FORMAT = "%Y-%m-%d %H:%M:%S %Z"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _stamp() -> str:
    return _now().strftime(TS_FORMAT)


@runtime_checkable
class Processor(Protocol):
    def process(self, payload: Any, request_id: str) -> Any:
        ...


@runtime_checkable
class ContextProcessor(Protocol):
    def process_with_context(self, payload: Any, ctx: ProcessorContext) -> Any:
        ...


def run_processor(processor: Processor, payload: Any, ctx: ProcessorContext) -> Any:
    """Invoke the richest interface the processor supports."""
    if isinstance(processor, ContextProcessor):
        return processor.process_with_context(payload, ctx)
    return processor.process(payload, ctx.request_id)


# --------------------------------------------------------------------
# Built-in processors
# --------------------------------------------------------------------
class HelloWorldProcessor:
    def process(self, payload: Any, request_id: str) -> Dict[str, Any]:
        return {
            "message": "Hello World",
            "request_id": request_id,
            "timestamp": _stamp(),
        }


class EchoProcessor:
    """Return the original payload wrapped with metadata."""

    def process(self, payload: Any, request_id: str) -> Dict[str, Any]:
        return {
            "original_payload": payload,
            "request_id": request_id,
            "processed_at": _stamp(),
            "processor": "echo",
            "status": "echoed",
        }


class TimestampProcessor:
    def process(self, payload: Any, request_id: str) -> Dict[str, Any]:
        now = _now()
        return {
            "data": payload,
            "request_id": request_id,
            "processed_at": now.strftime(TS_FORMAT),
            "unix_time": int(now.timestamp()),
            "processor": "timestamp",
            "day_of_week": now.strftime("%A"),
        }


class CounterProcessor:
    """Numbers every request it sees. Safe to share across concurrent webhooks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def process(self, payload: Any, request_id: str) -> Dict[str, Any]:
        with self._lock:
            self._count += 1
            n = self._count
        return {
            "payload": payload,
            "request_id": request_id,
            "count": n,
            "processed_at": _stamp(),
            "processor": "counter",
            "message": f"This is request number {n}",
        }


class AdvancedContextProcessor:
    def __init__(self, service_name: str = "post2post"):
        self.service_name = service_name

    def process(self, payload: Any, request_id: str) -> Dict[str, Any]:
        return self.process_with_context(payload, ProcessorContext(request_id=request_id))

    def process_with_context(self, payload: Any, ctx: ProcessorContext) -> Dict[str, Any]:
        elapsed_ms = int((_now() - ctx.received_at).total_seconds() * 1000)
        response: Dict[str, Any] = {
            "service_name": self.service_name,
            "original_payload": payload,
            "context": {
                "request_id": ctx.request_id,
                "callback_url": ctx.url,
                "received_at": ctx.received_at.isoformat(),
                "processing_ms": elapsed_ms,
            },
            "processed_at": _stamp(),
            "processor": "advanced_context",
            "status": "processed_with_context",
        }
        if ctx.tailnet_key:
            response["tailscale"] = {
                "enabled": True,
                "key_prefix": mask_key(ctx.tailnet_key),
                "secure_mode": True,
            }
        return response


class TransformProcessor:
    """Uppercase string payloads, or the string values of an object payload."""

    def process(self, payload: Any, request_id: str) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "request_id": request_id,
            "processed_at": _stamp(),
            "processor": "transform",
            "original": payload,
        }
        if isinstance(payload, str):
            response["transformed"] = payload.upper()
            response["transformation"] = "uppercase"
        elif isinstance(payload, dict):
            response["transformed"] = {
                k: v.upper() if isinstance(v, str) else v for k, v in payload.items()
            }
            response["transformation"] = "uppercase_strings"
        else:
            response["transformed"] = payload
            response["transformation"] = "no_transformation"
            response["message"] = "Only strings and maps with string values are transformed"
        return response


class ValidatorProcessor:
    """
    Check that an object payload carries every required field.

    In strict mode a failed check raises ProcessingError, which stops a chain.
    Otherwise a validation report is returned either way.
    """

    def __init__(self, required_fields: Iterable[str] = (), *, strict: bool = True):
        self.required_fields: List[str] = list(required_fields)
        self.strict = strict

    def process(self, payload: Any, request_id: str) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "request_id": request_id,
            "processed_at": _stamp(),
            "processor": "validator",
            "original": payload,
        }

        if not isinstance(payload, dict):
            if self.strict:
                raise ProcessingError("payload is not a JSON object")
            response["validation"] = {
                "valid": False,
                "message": "Payload must be a JSON object for validation",
            }
            response["status"] = "invalid"
            response["message"] = "Payload is not a JSON object"
            return response

        present = [f for f in self.required_fields if f in payload]
        missing = [f for f in self.required_fields if f not in payload]

        if missing and self.strict:
            raise ProcessingError(f"missing required fields: {missing}")

        response["validation"] = {
            "valid": not missing,
            "required_fields": self.required_fields,
            "present_fields": present,
            "missing_fields": missing,
        }
        if missing:
            response["status"] = "invalid"
            response["message"] = f"Missing required fields: {missing}"
        else:
            response["status"] = "valid"
            response["message"] = "All required fields are present"
        return response


class ChainProcessor:
    """Feed each stage's output into the next; stop at the first failure."""

    def __init__(self, *processors: Processor):
        self.processors: List[Processor] = list(processors)

    def process(self, payload: Any, request_id: str) -> Dict[str, Any]:
        return self.process_with_context(payload, ProcessorContext(request_id=request_id))

    def process_with_context(self, payload: Any, ctx: ProcessorContext) -> Dict[str, Any]:
        current = payload
        for i, stage in enumerate(self.processors):
            try:
                current = run_processor(stage, current, ctx)
            except Exception as e:  # noqa: BLE001
                return {
                    "error": f"Processor {i} failed: {e}",
                    "request_id": ctx.request_id,
                    "processor": "chain",
                    "failed_at": i,
                    "status": "error",
                    "processed_at": _stamp(),
                }
        return {
            "result": current,
            "request_id": ctx.request_id,
            "processor": "chain",
            "chain_length": len(self.processors),
            "processed_at": _stamp(),
        }


# --------------------------------------------------------------------
# Name-keyed factory used by configuration
# --------------------------------------------------------------------
PROCESSORS: Dict[str, Callable[..., Processor]] = {
    "hello": lambda **_: HelloWorldProcessor(),
    "echo": lambda **_: EchoProcessor(),
    "timestamp": lambda **_: TimestampProcessor(),
    "counter": lambda **_: CounterProcessor(),
    "advanced": lambda service_name="post2post", **_: AdvancedContextProcessor(service_name),
    "transform": lambda **_: TransformProcessor(),
    "validator": lambda required_fields=(), **_: ValidatorProcessor(required_fields),
}


def build_processor(name: str, **options: Any) -> Optional[Processor]:
    """
    Return the processor registered under `name`, or None for "" / "none".
    Raises ConfigurationError for unknown names.
    """
    key = (name or "").strip().lower()
    if key in ("", "none"):
        return None
    factory = PROCESSORS.get(key)
    if factory is None:
        raise ConfigurationError(
            f"unknown processor {name!r}; expected one of {sorted(PROCESSORS)}"
        )
    return factory(**options)
