#!/usr/bin/env python3
"""
Request/response correlation over the shared bridge WebSocket.

A request is parked here under its id together with the response type it is
waiting for. Every inbound message is offered to the pending requests; the
first one whose type and matcher agree is resolved. Anything else is ignored.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Matcher = Callable[[Dict[str, Any]], bool]


class RequestTimeoutError(asyncio.TimeoutError):
    """No matching response arrived before the request deadline."""


@dataclass
class PendingRequest:
    """A request waiting for its response."""
    request_id: str
    response_type: str
    future: asyncio.Future
    timeout_handle: Optional[asyncio.TimerHandle]
    matcher: Matcher


class PendingRequests:
    """Tracks at most one outstanding request per request id."""

    def __init__(self, name: str = "requests"):
        self.name = name
        self._pending: Dict[str, PendingRequest] = {}

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def get(self, request_id: str) -> Optional[PendingRequest]:
        return self._pending.get(request_id)

    def expect(
        self,
        request_id: str,
        response_type: str,
        timeout: float,
        matcher: Optional[Matcher] = None,
    ) -> asyncio.Future:
        """
        Register a pending request.

        If a request with the same id is already waiting, its future is
        returned instead of creating a second one.

        Args:
            request_id: Correlation key.
            response_type: Inbound message ``type`` that can complete it.
            timeout: Seconds before the future fails with RequestTimeoutError.
            matcher: Extra predicate on the response (e.g. same scene id).

        Returns:
            Future resolved with the matching response message.
        """
        existing = self._pending.get(request_id)
        if existing is not None:
            return existing.future

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        handle = loop.call_later(timeout, self._expire, request_id, timeout)
        self._pending[request_id] = PendingRequest(
            request_id=request_id,
            response_type=response_type,
            future=future,
            timeout_handle=handle,
            matcher=matcher or (lambda message: True),
        )
        return future

    def resolve(self, message: Dict[str, Any]) -> bool:
        """
        Offer an inbound message to the pending requests.

        Returns:
            True if the message completed a request.
        """
        msg_type = message.get("type")
        for request_id, pending in list(self._pending.items()):
            if pending.response_type != msg_type:
                continue
            try:
                matched = pending.matcher(message)
            except Exception as e:
                logger.warning(f"⚠️ Matcher for {request_id} failed: {e}")
                continue
            if not matched:
                continue

            self._finish(request_id)
            if not pending.future.done():
                pending.future.set_result(message)
            return True
        return False

    def discard(self, request_id: str):
        """Drop a request whose outbound message never left."""
        pending = self._finish(request_id)
        if pending and not pending.future.done():
            pending.future.cancel()

    def reject_all(self, error: BaseException):
        """Fail every pending request, e.g. on explicit disconnect."""
        for request_id in list(self._pending):
            pending = self._finish(request_id)
            if pending and not pending.future.done():
                pending.future.set_exception(error)

    def _expire(self, request_id: str, timeout: float):
        pending = self._finish(request_id)
        if pending is None or pending.future.done():
            return
        logger.warning(f"⏱️ {self.name}: {request_id} timed out after {timeout:.1f}s")
        pending.future.set_exception(
            RequestTimeoutError(f"No {pending.response_type} for {request_id} within {timeout:.1f}s")
        )

    def _finish(self, request_id: str) -> Optional[PendingRequest]:
        pending = self._pending.pop(request_id, None)
        if pending and pending.timeout_handle:
            pending.timeout_handle.cancel()
        return pending
