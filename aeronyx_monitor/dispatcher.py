"""Fan-out of connection events to independent subscribers."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
import logging
import time

from .codecs.frames import InboundFrame
from .domain.state import ConnectionState
from .errors import RequestTimeout

_LOGGER = logging.getLogger(__name__)

EVENT_STATE = "state"
EVENT_FRAME = "frame"


@dataclass(frozen=True, slots=True)
class MonitorEvent:
    """A state transition or an inbound frame, as seen by subscribers."""

    kind: str
    state: ConnectionState
    previous_state: ConnectionState | None = None
    frame: InboundFrame | None = None
    reason: str | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def frame_type(self) -> str | None:
        """Return the frame type for frame events."""

        return self.frame.type if self.frame is not None else None

    @property
    def is_state(self) -> bool:
        """Return True for state transition events."""

        return self.kind == EVENT_STATE


Listener = Callable[[MonitorEvent], None]


@dataclass(slots=True, eq=False)
class _Subscription:
    listener: Listener
    frame_types: frozenset[str] | None
    include_state: bool
    active: bool = True

    def wants(self, event: MonitorEvent) -> bool:
        if not self.active:
            return False
        if event.kind == EVENT_STATE:
            return self.include_state
        return self.frame_types is None or event.frame_type in self.frame_types


class MessageDispatcher:
    """Deliver every event to every current subscriber, in order.

    Delivery is synchronous: ``dispatch`` returns only after each listener has
    run, so events reach listeners in the order they were dispatched. A
    listener that raises is logged and skipped. Subscribing or unsubscribing
    never touches the underlying connection.
    """

    def __init__(self) -> None:
        """Initialise an empty registry."""
        self._subscriptions: list[_Subscription] = []
        self._dispatched = 0

    @property
    def listener_count(self) -> int:
        """Return the number of active subscriptions."""

        return len(self._subscriptions)

    @property
    def dispatched_total(self) -> int:
        """Return how many events have been dispatched."""

        return self._dispatched

    def subscribe(
        self,
        listener: Listener,
        *,
        frame_types: Iterable[str] | None = None,
        include_state: bool = True,
    ) -> Callable[[], None]:
        """Register ``listener`` and return its unsubscribe callable.

        ``frame_types`` limits frame events to the given types; state events
        are delivered unless ``include_state`` is False.
        """

        subscription = _Subscription(
            listener=listener,
            frame_types=frozenset(frame_types) if frame_types is not None else None,
            include_state=include_state,
        )
        self._subscriptions.append(subscription)

        def _unsubscribe() -> None:
            subscription.active = False
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return _unsubscribe

    def dispatch(self, event: MonitorEvent) -> int:
        """Deliver ``event`` and return the number of listeners that got it."""

        self._dispatched += 1
        delivered = 0
        for subscription in tuple(self._subscriptions):
            if not subscription.wants(event):
                continue
            try:
                subscription.listener(event)
            except Exception:
                _LOGGER.exception(
                    "Listener %r failed for %s event", subscription.listener, event.kind
                )
                continue
            delivered += 1
        return delivered

    def dispatch_state(
        self,
        state: ConnectionState,
        previous: ConnectionState | None,
        *,
        reason: str | None = None,
    ) -> int:
        """Publish a state transition."""

        return self.dispatch(
            MonitorEvent(
                kind=EVENT_STATE, state=state, previous_state=previous, reason=reason
            )
        )

    def dispatch_frame(self, frame: InboundFrame, state: ConnectionState) -> int:
        """Publish an inbound frame observed in ``state``."""

        return self.dispatch(MonitorEvent(kind=EVENT_FRAME, state=state, frame=frame))

    async def wait_for(
        self, predicate: Callable[[MonitorEvent], bool], timeout: float
    ) -> MonitorEvent:
        """Return the first event matching ``predicate``.

        Raises :class:`RequestTimeout` when nothing matches within ``timeout``
        seconds. An exception raised by ``predicate`` is propagated.
        """

        future: asyncio.Future[MonitorEvent] = asyncio.get_running_loop().create_future()

        def _listener(event: MonitorEvent) -> None:
            if future.done():
                return
            try:
                matched = predicate(event)
            except Exception as err:
                future.set_exception(err)
                return
            if matched:
                future.set_result(event)

        unsubscribe = self.subscribe(_listener)
        try:
            async with asyncio.timeout(timeout):
                return await future
        except TimeoutError as err:
            raise RequestTimeout(f"no matching event within {timeout:.1f}s") from err
        finally:
            unsubscribe()

    def clear(self) -> None:
        """Drop every subscription."""

        for subscription in self._subscriptions:
            subscription.active = False
        self._subscriptions.clear()


__all__ = [
    "EVENT_FRAME",
    "EVENT_STATE",
    "Listener",
    "MessageDispatcher",
    "MonitorEvent",
]
