# post2post/core/registry.py
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, List, Optional, Tuple

from post2post.common.errors import CorrelationError, DuplicateRequestError
from post2post.core.models import DeliveryOutcome, RoundTripResult

logger = logging.getLogger("post2post.registry")


def _settle(fut: "asyncio.Future[RoundTripResult]", result: RoundTripResult) -> None:
    if not fut.done():
        fut.set_result(result)


def _abandon(fut: "asyncio.Future[RoundTripResult]") -> None:
    if not fut.done():
        fut.cancel()


class PendingRequest:
    """
    Single-slot delivery channel for one in-flight round trip.

    The slot can be filled from any thread or event loop; the waiter is woken
    on its own loop. Once filled or closed, further offers are refused.
    """

    def __init__(self, request_id: str):
        self.request_id = request_id
        self._lock = threading.Lock()
        self._result: Optional[RoundTripResult] = None
        self._closed = False
        self._waiter: Optional[Tuple[asyncio.AbstractEventLoop, "asyncio.Future[RoundTripResult]"]] = None

    @property
    def result(self) -> Optional[RoundTripResult]:
        with self._lock:
            return self._result

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def offer(self, result: RoundTripResult) -> bool:
        """Non-blocking send. Return False if the slot is already full or closed."""
        with self._lock:
            if self._closed or self._result is not None:
                return False
            self._result = result
            waiter = self._waiter
        if waiter is not None:
            loop, fut = waiter
            if not loop.is_closed():
                loop.call_soon_threadsafe(_settle, fut, result)
        return True

    async def wait(self, timeout: Optional[float]) -> RoundTripResult:
        """
        Suspend until a result is offered.
        Raises asyncio.TimeoutError when `timeout` elapses first.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._result is not None:
                return self._result
            if self._closed:
                raise CorrelationError(f"channel for {self.request_id} is closed")
            if self._waiter is not None:
                raise CorrelationError(f"channel for {self.request_id} already has a waiter")
            fut: "asyncio.Future[RoundTripResult]" = loop.create_future()
            self._waiter = (loop, fut)
        try:
            return await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError:
            # A result offered while the timeout fired still wins; otherwise
            # the slot is closed so a late callback is refused.
            with self._lock:
                self._waiter = None
                if self._result is not None:
                    return self._result
                self._closed = True
            raise

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            waiter, self._waiter = self._waiter, None
        if waiter is not None:
            loop, fut = waiter
            if not loop.is_closed():
                loop.call_soon_threadsafe(_abandon, fut)


class CorrelationRegistry:
    """
    Thread-safe map of request ID -> PendingRequest.

    The lock guards the map only; it is never held while a caller waits on a
    channel.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingRequest] = {}

    def register(self, request_id: str) -> PendingRequest:
        if not request_id:
            raise CorrelationError("request_id must be non-empty")
        with self._lock:
            if request_id in self._pending:
                raise DuplicateRequestError(f"request_id already in flight: {request_id}")
            channel = PendingRequest(request_id)
            self._pending[request_id] = channel
            total = len(self._pending)
        logger.debug("registered %s (in flight: %d)", request_id, total)
        return channel

    def deliver(self, request_id: str, result: RoundTripResult) -> DeliveryOutcome:
        with self._lock:
            channel = self._pending.get(request_id)
        if channel is None:
            logger.info("no waiting channel for %s", request_id)
            return DeliveryOutcome.NOT_FOUND
        if not channel.offer(result):
            logger.info("channel for %s already resolved or closed", request_id)
            return DeliveryOutcome.GONE
        logger.debug("delivered result for %s", request_id)
        return DeliveryOutcome.DELIVERED

    def unregister(self, request_id: str) -> None:
        with self._lock:
            channel = self._pending.pop(request_id, None)
            remaining = len(self._pending)
        if channel is None:
            return
        channel.close()
        logger.debug("cleaned up %s (remaining: %d)", request_id, remaining)

    def pending_ids(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return request_id in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
