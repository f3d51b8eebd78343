"""Event bus delivering every event to every registered listener queue."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass

from . import attrs
from .events import Event

_TOTAL_SEND_TIMEOUT = 1.0
_DEFAULT_TIMEOUT = 1.0

_default_logger = logging.getLogger(__name__)


class BusError(Exception):
    """Raised when an event could not be delivered to some listeners."""

    def __init__(self, event: Event, failures: dict[str, BaseException]) -> None:
        self.event = event
        self.failures = dict(failures)
        message = "\n".join(
            f"sending event: {event.log_value()} to {listener_id}, {error!r}"
            for listener_id, error in self.failures.items()
        )
        super().__init__(message)


@dataclass
class BusConfig:
    """Settings of a :class:`Bus`.

    ``send_event_timeout`` limits, in seconds, a single delivery to one
    listener; zero or None leaves only the overall limit of one second.
    """

    send_event_timeout: float | None = _DEFAULT_TIMEOUT
    logger: logging.Logger | None = None


class Bus:
    """Delivers events to listener queues, optionally remembering them."""

    def __init__(self, config: BusConfig | None = None) -> None:
        if config is None:
            config = BusConfig()
        self.timeout = config.send_event_timeout
        self.logger = config.logger
        self._listeners: dict[str, asyncio.Queue] = {}
        self._buffering = False
        self._lock = threading.Lock()
        self._buffer: list[Event] = []

    def add_listener(self, listener_id: str, queue: asyncio.Queue) -> None:
        """Register a queue that receives every event sent from now on."""
        self._listeners[listener_id] = queue

    def remove_listener(self, listener_id: str) -> None:
        """Stop delivering events to the listener, if it is registered."""
        self._listeners.pop(listener_id, None)

    def start_buffering(self) -> None:
        """Remember every event sent from now on."""
        self._buffering = True

    def stop_buffering(self) -> None:
        """Stop remembering sent events; already remembered ones are kept."""
        self._buffering = False

    def buffered_events(self) -> list[Event]:
        """Copy of the events remembered so far, oldest first."""
        with self._lock:
            return list(self._buffer)

    async def send(self, event: Event) -> None:
        """Deliver the event to all listeners.

        Every listener is tried, each delivery limited by the configured
        timeout and all of them together by one second.  Raises
        :class:`BusError` naming the listeners that were not reached.
        """
        log = self.logger or _default_logger
        event_id = attrs.random_id("eid")
        log.info("sending event", extra=event_id | {"evt": event.log_value()})

        loop = asyncio.get_running_loop()
        deadline = loop.time() + _TOTAL_SEND_TIMEOUT
        failures: dict[str, BaseException] = {}
        for listener_id, queue in list(self._listeners.items()):
            log.debug("sending event to listener", extra=event_id | attrs.mod_id(listener_id))
            try:
                await self._deliver(queue, event, deadline)
            except TimeoutError as exc:
                failures[listener_id] = exc

        self._remember(event)
        if failures:
            raise BusError(event, failures)

    async def _deliver(self, queue: asyncio.Queue, event: Event, deadline: float) -> None:
        limit = deadline
        if self.timeout:
            limit = min(limit, asyncio.get_running_loop().time() + self.timeout)
        async with asyncio.timeout_at(limit):
            await queue.put(event)

    def _remember(self, event: Event) -> None:
        if self._buffering:
            with self._lock:
                self._buffer.append(event)