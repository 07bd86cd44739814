"""Match correlated requests with their replies."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
import logging
import time
from typing import Any
import uuid

from .backend.sanitize import redact_payload
from .codecs.frames import CommandResponseFrame, ErrorFrame, InboundFrame
from .const import REQUEST_TIMEOUT
from .dispatcher import EVENT_FRAME, MonitorEvent
from .domain.state import LOST_STATES, PendingRequest
from .errors import RequestTimeout, ServerError, TransportError

_LOGGER = logging.getLogger(__name__)

SendCallable = Callable[[Mapping[str, Any]], Awaitable[None]]


def _new_request_id() -> str:
    """Return a unique correlation id."""

    return uuid.uuid4().hex


class RequestCorrelator:
    """Send requests tagged with ``request_id`` and await the matching reply.

    Each request is settled exactly once: by its reply, by an error frame
    carrying its id, by its timeout, or by connection loss. The timer and the
    pending entry are removed in every case.
    """

    def __init__(
        self,
        send: SendCallable,
        *,
        default_timeout: float = REQUEST_TIMEOUT,
        id_factory: Callable[[], str] = _new_request_id,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise the correlator around a frame sender."""
        self._send = send
        self._default_timeout = default_timeout
        self._id_factory = id_factory
        self._clock = clock
        self._pending: dict[str, PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        """Return the number of outstanding requests."""

        return len(self._pending)

    def is_pending(self, request_id: str) -> bool:
        """Return True while ``request_id`` awaits its reply."""

        return request_id in self._pending

    async def send_request(
        self, payload: Mapping[str, Any], timeout: float | None = None
    ) -> InboundFrame:
        """Send ``payload`` with a fresh ``request_id`` and return the reply.

        Raises :class:`RequestTimeout`, :class:`ServerError` or
        :class:`TransportError`.
        """

        request_id = self._id_factory()
        if request_id in self._pending:
            raise ValueError(f"duplicate request id {request_id}")
        delay = self._default_timeout if timeout is None else float(timeout)
        if delay <= 0:
            raise ValueError("timeout must be positive")

        loop = asyncio.get_running_loop()
        entry = PendingRequest(
            request_id=request_id,
            future=loop.create_future(),
            created_at=self._clock(),
            request_type=str(payload.get("type") or "") or None,
        )
        entry.timer = loop.call_later(delay, self._expire, request_id, delay)
        self._pending[request_id] = entry
        _LOGGER.debug(
            "Request %s sent; timeout %.1fs; payload=%s",
            request_id,
            delay,
            redact_payload(payload),
        )

        try:
            try:
                await self._send({**payload, "request_id": request_id})
            except TransportError as err:
                self._settle(request_id, error=err)
            except Exception as err:
                self._settle(request_id, error=TransportError(str(err)))
            return await entry.future
        finally:
            self._discard(request_id)

    def handle_event(self, event: MonitorEvent) -> None:
        """Dispatcher listener: settle replies and fail requests on disconnect."""

        if event.kind == EVENT_FRAME:
            if event.frame is not None:
                self.handle_frame(event.frame)
            return
        if event.state in LOST_STATES and self._pending:
            reason = event.reason or event.state.value
            self.reject_all(TransportError(f"connection lost ({reason})"))

    def handle_frame(self, frame: InboundFrame) -> bool:
        """Settle the request ``frame`` answers; return True if one matched."""

        request_id = getattr(frame, "request_id", None) or frame.raw.get("request_id")
        if request_id is None:
            return False
        request_id = str(request_id)
        if request_id not in self._pending:
            _LOGGER.debug("Reply for unknown or settled request %s", request_id)
            return False

        if isinstance(frame, CommandResponseFrame):
            if frame.success:
                return self._settle(request_id, result=frame)
            return self._settle(
                request_id,
                error=ServerError(
                    frame.error_code, frame.error_message or "request failed"
                ),
            )
        if isinstance(frame, ErrorFrame):
            return self._settle(request_id, error=ServerError(frame.code, frame.message))
        return self._settle(request_id, result=frame)

    def reject_all(self, error: BaseException) -> int:
        """Reject every outstanding request with ``error``."""

        count = 0
        for request_id in list(self._pending):
            if self._settle(request_id, error=error):
                count += 1
        if count:
            _LOGGER.debug("Rejected %d pending requests: %s", count, error)
        return count

    # ----------------- Internals -----------------

    def _expire(self, request_id: str, delay: float) -> None:
        entry = self._pending.get(request_id)
        if entry is None:
            return
        _LOGGER.debug("Request %s timed out after %.1fs", request_id, delay)
        self._settle(
            request_id,
            error=RequestTimeout(f"request {request_id} timed out after {delay:.1f}s"),
        )

    def _settle(
        self,
        request_id: str,
        *,
        result: InboundFrame | None = None,
        error: BaseException | None = None,
    ) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.future.done():
            return False
        if error is not None:
            entry.future.set_exception(error)
        else:
            entry.future.set_result(result)
        return True

    def _discard(self, request_id: str) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        if entry.timer is not None:
            entry.timer.cancel()
        if not entry.future.done():
            entry.future.cancel()


__all__ = ["RequestCorrelator", "SendCallable"]
