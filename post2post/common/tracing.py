# post2post/common/tracing.py
from __future__ import annotations
import logging, uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Optional, Callable, Iterator, Union

_TRACE_ID: ContextVar[Optional[str]] = ContextVar("_TRACE_ID", default=None)
_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("_REQUEST_ID", default=None)

def new_trace_id() -> str:
    return str(uuid.uuid4())

def get_trace_id() -> Optional[str]:
    return _TRACE_ID.get()

def set_trace_id(value: Optional[str]) -> None:
    _TRACE_ID.set(value)

def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()

@contextmanager
def bind_request_id(request_id: Optional[str]) -> Iterator[None]:
    """
    Stamp `request_id` on every record logged inside the block.
    Tasks spawned inside the block inherit it.
    """
    token = _REQUEST_ID.set(request_id or None)
    try:
        yield
    finally:
        _REQUEST_ID.reset(token)

_factory_installed = False

def _install_logrecord_factory() -> None:
    """Ensure every LogRecord has .trace_id and .request_id (even for 3rd-party loggers)."""
    global _factory_installed
    if _factory_installed:
        return
    old_factory: Callable[..., logging.LogRecord] = logging.getLogRecordFactory()  # type: ignore

    def record_factory(*args, **kwargs) -> logging.LogRecord:  # type: ignore
        record = old_factory(*args, **kwargs)
        if not hasattr(record, "trace_id"):
            record.trace_id = get_trace_id() or "-"
        if not hasattr(record, "request_id"):
            record.request_id = get_request_id() or "-"
        return record

    logging.setLogRecordFactory(record_factory)
    _factory_installed = True

def setup_logging(level: Union[int, str] = logging.INFO) -> None:
    """Set a format that includes trace_id and the round-trip request_id, and install the factory."""
    _install_logrecord_factory()
    if isinstance(level, str):
        level = level.upper()
    fmt = "%(asctime)s %(levelname)s %(name)s [trace=%(trace_id)s req=%(request_id)s]: %(message)s"
    logging.basicConfig(level=level, format=fmt)
