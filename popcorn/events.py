"""Events exchanged between the kernel and its modules."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

EVENT_SOURCE_KERNEL = "kernel"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ModuleState(enum.IntEnum):
    """Health state of a module or of the kernel."""

    UNKNOWN = 0
    OK = 1
    NOK = 2
    TEMP_NOK = 3


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    """Something that happened in the application.

    ``kind`` lets listeners tell events apart, ``source`` is the kernel or the
    id of the module that produced it, ``at`` is when it happened and
    ``payload`` is kind-specific.
    """

    kind: str
    source: str
    at: datetime = field(default_factory=_now)
    payload: Any = None

    def log_value(self) -> str:
        """Compact description used in log records."""
        at = self.at if self.at.tzinfo is not None else self.at.replace(tzinfo=timezone.utc)
        delta = at - _EPOCH
        nanos = (delta.days * 86400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1000
        return "{Kind:" + self.kind + ", Source:" + self.source + ", At:" + str(nanos) + "}"


@dataclass(frozen=True)
class ModuleStarted:
    """Sent by the kernel after a module has started."""

    id: str
    order: int
    start_took: timedelta


@dataclass(frozen=True)
class ModuleStatusChanged:
    """Sent when a module's health changes."""

    id: str
    from_state: ModuleState
    to_state: ModuleState
    cause: str = ""


def event_kind(payload_type: type) -> str:
    """Kind of the events carrying payloads of the given type."""
    return payload_type.__name__


def base_event(payload_type: type, source: str) -> Event:
    """Event without payload, its kind taken from the payload type, stamped now."""
    return Event(kind=event_kind(payload_type), source=source, at=_now())


def new_event(source: str, payload: Any) -> Event:
    """Event carrying the payload, its kind taken from the payload's type."""
    return Event(kind=event_kind(type(payload)), source=source, at=_now(), payload=payload)


def kernel_event(payload: Any) -> Event:
    """Event carrying the payload with the kernel as its source."""
    return new_event(EVENT_SOURCE_KERNEL, payload)