"""Kernel managing the lifecycle of modules and the health of the application."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import timedelta

from . import attrs
from .bus import Bus, BusError
from .events import (
    EVENT_SOURCE_KERNEL,
    Event,
    ModuleStarted,
    ModuleState,
    ModuleStatusChanged,
    kernel_event,
)

StopFunc = Callable[[], Awaitable[None]]
"""Stops a module, releasing everything it allocated while starting."""

StartFunc = Callable[[], Awaitable[StopFunc | None]]
"""Starts a module; the returned function, if any, is called on shutdown."""

_KERNEL_QUEUE_SIZE = 10
_FALLBACK_DELIVERY_TIMEOUT = 1.0


class KernelUnhealthyError(Exception):
    """Raised when the kernel stops because a module reported it is not OK."""

    def __init__(self, cause: str | BaseException) -> None:
        self.cause = cause
        super().__init__(f"kernel is unhealthy, {cause}")


class ModuleStateStore:
    """Thread-safe holder of a :class:`ModuleState`."""

    def __init__(self, state: ModuleState = ModuleState.UNKNOWN) -> None:
        self._lock = threading.Lock()
        self._state = state

    @property
    def value(self) -> ModuleState:
        with self._lock:
            return self._state

    @value.setter
    def value(self, state: ModuleState) -> None:
        with self._lock:
            self._state = state

    def compare_and_swap(self, expected: ModuleState, new: ModuleState) -> bool:
        """Replace the state with ``new`` only if it currently is ``expected``."""
        with self._lock:
            if self._state != expected:
                return False
            self._state = new
            return True


@dataclass
class ModRecipe:
    """Description of a module.

    ``id`` must be non-empty, unique among the kernel's modules and different
    from the kernel's own source name.  ``dependencies`` name the modules that
    must be started first.  ``events``, when given, receives every event sent
    on the bus once the module has started, preceded by the events that took
    place before it started.
    """

    id: str
    start: StartFunc | None
    dependencies: Sequence[str] = field(default_factory=tuple)
    events: asyncio.Queue | None = None

    def _validate(self) -> None:
        if not self.id:
            raise ValueError("id not set")
        if self.id == EVENT_SOURCE_KERNEL:
            raise ValueError(
                f"cannot use module id '{EVENT_SOURCE_KERNEL}' - it is reserved by the kernel"
            )
        if self.start is None:
            raise ValueError("start function not set")


class Module:
    """A self-contained piece of the application that knows how to start and stop."""

    def __init__(self, recipe: ModRecipe) -> None:
        try:
            recipe._validate()
        except ValueError as exc:
            raise ValueError(
                f"creating new module with invalid configuration: {recipe!r}, {exc}"
            ) from exc
        self.id = recipe.id
        self.dependencies: tuple[str, ...] = tuple(recipe.dependencies)
        self.events = recipe.events
        self.start_func: StartFunc = recipe.start
        self.stop_func: StopFunc | None = None

    def __repr__(self) -> str:
        return f"Module(id={self.id!r}, dependencies={self.dependencies!r})"


class Kernel:
    """Starts modules in dependency order and watches the application's health."""

    def __init__(
        self,
        bus: Bus,
        logger: logging.Logger | None,
        *args: Module,
        health_tick: float = 1.0,
        stop_timeout: float | None = 5.0,
    ) -> None:
        seen: dict[str, int] = {}
        for index, module in enumerate(args):
            if module.id in seen:
                raise ValueError(
                    f"duplicate module id: {module.id}, passed at indexes: "
                    f"{seen[module.id]} and {index}"
                )
            seen[module.id] = index

        if logger is None:
            logger = logging.getLogger("popcorn")
            logger.warning("logger was nil, using default one")

        if not bus.timeout:
            bus.timeout = _FALLBACK_DELIVERY_TIMEOUT
        if bus.logger is None:
            bus.logger = logger

        self.bus = bus
        self.logger = logger
        self.modules: tuple[Module, ...] = args
        self.health_tick = health_tick
        self.stop_timeout = stop_timeout
        self.state = ModuleStateStore()
        self._unhealthy_cause: str | None = None
        self._started: list[Module] = []

    async def start(self) -> None:
        """Start all modules, then run until cancelled or unhealthy.

        Modules are stopped before this returns.  Cancellation is propagated
        after stopping; an unhealthy state raises :class:`KernelUnhealthyError`,
        grouped with any errors raised while stopping.
        """
        self._started = []
        self._unhealthy_cause = None
        self.state.value = ModuleState.UNKNOWN

        queue: asyncio.Queue = asyncio.Queue(maxsize=_KERNEL_QUEUE_SIZE)
        self.bus.start_buffering()
        self.bus.add_listener(EVENT_SOURCE_KERNEL, queue)
        listener = asyncio.create_task(self._listen(queue))

        self.logger.info("starting the kernel", extra={"modCount": len(self.modules)})
        try:
            await self._start_modules()
        except BaseException:
            self.bus.stop_buffering()
            self._log_stop_errors(await self._shutdown(listener, queue))
            raise
        self.bus.stop_buffering()

        try:
            await self._watch_health()
        except asyncio.CancelledError:
            self.logger.info("kernel cancelled, stopping the modules")
            self._log_stop_errors(await self._shutdown(listener, queue))
            raise
        except KernelUnhealthyError as unhealthy:
            stop_errors = await self._shutdown(listener, queue)
            if stop_errors:
                raise ExceptionGroup("kernel stopped with errors", [unhealthy, *stop_errors])
            raise

    async def _start_modules(self) -> None:
        left = {module.id: module for module in self.modules}
        deps_left = {module.id: list(module.dependencies) for module in self.modules}
        dependents: defaultdict[str, list[str]] = defaultdict(list)
        for module in self.modules:
            for dep_id in module.dependencies:
                self.logger.info(
                    "module has a dependency",
                    extra=attrs.mod_id(module.id) | {"dependsOn": dep_id},
                )
                dependents[dep_id].append(module.id)

        order = 0
        while left:
            newly_started = []
            for module_id, module in left.items():
                self.logger.info(
                    "trying to start module",
                    extra=attrs.mod_id(module_id) | {"depsLeft": len(deps_left[module_id])},
                )
                if deps_left[module_id]:
                    continue
                await self._start_module(module, order)
                order += 1
                newly_started.append(module_id)
                self.logger.info(
                    "notifying dependent modules",
                    extra={"dependents": attrs.strings("d", dependents[module_id])["d"]},
                )
                for dependent in dependents[module_id]:
                    deps_left[dependent] = [d for d in deps_left[dependent] if d != module_id]

            if not newly_started:
                blocked = {mid: deps_left[mid] for mid in left}
                raise ValueError(f"cannot resolve module dependencies: {blocked}")
            for module_id in newly_started:
                del left[module_id]

    async def _start_module(self, module: Module, order: int) -> None:
        self.logger.info("module has no dependencies left, starting", extra=attrs.mod_id(module.id))
        began = time.perf_counter()
        try:
            stop = await module.start_func()
        except Exception as exc:
            raise RuntimeError(f"starting a module: {module.id}, {exc}") from exc
        if stop is not None:
            module.stop_func = stop
        self.logger.info("module started", extra=attrs.mod_id(module.id))

        if module.events is not None:
            self.logger.info(
                "adding new event listener",
                extra=attrs.mod_id(module.id) | attrs.chan(module.events),
            )
            self.bus.add_listener(module.id, module.events)
            await self._replay_backlog(module)

        await self.bus.send(
            kernel_event(
                ModuleStarted(
                    id=module.id,
                    order=order,
                    start_took=timedelta(seconds=time.perf_counter() - began),
                )
            )
        )

    async def _replay_backlog(self, module: Module) -> None:
        limit = self.bus.timeout or _FALLBACK_DELIVERY_TIMEOUT
        for event in self.bus.buffered_events():
            try:
                async with asyncio.timeout(limit):
                    await module.events.put(event)
            except TimeoutError as exc:
                raise BusError(event, {module.id: exc}) from exc

    async def _listen(self, queue: asyncio.Queue) -> None:
        while True:
            self._handle_event(await queue.get())

    def _handle_event(self, event: Event) -> None:
        self.logger.info("kernel received the event", extra={"evt": event.log_value()})
        match event.payload:
            case ModuleStatusChanged(to_state=ModuleState.NOK) as changed:
                self._unhealthy_cause = f"module {changed.id} reported: {changed.cause}"
                self.state.value = ModuleState.NOK
            case ModuleStatusChanged():
                pass
            case ModuleStarted(id=started_id):
                for module in self.modules:
                    if module.id == started_id:
                        self._started.append(module)
                        return
                self.logger.error(
                    "received event with module ModID not matching any of the modules",
                    extra=attrs.mod_id(started_id),
                )
            case _:
                self.logger.error("unknown event type", extra=attrs.type_of("event", event.payload))

    async def _watch_health(self) -> None:
        while True:
            await asyncio.sleep(self.health_tick)
            state = self.state.value
            self.logger.debug("read kernel state", extra={"state": state.name})
            if state == ModuleState.NOK:
                cause = "kernel state is NOK"
                if self._unhealthy_cause:
                    cause = f"{cause}, {self._unhealthy_cause}"
                raise KernelUnhealthyError(cause)

    async def _shutdown(self, listener: asyncio.Task, queue: asyncio.Queue) -> list[Exception]:
        listener.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await listener
        while not queue.empty():
            self._handle_event(queue.get_nowait())
        self.bus.remove_listener(EVENT_SOURCE_KERNEL)
        self.logger.info("listening for events by the Kernel was canceled")

        loop = asyncio.get_running_loop()
        deadline = None if self.stop_timeout is None else loop.time() + self.stop_timeout
        errors: list[Exception] = []
        for module in self._started:
            if module.stop_func is None:
                continue
            try:
                async with asyncio.timeout_at(deadline):
                    await module.stop_func()
            except Exception as exc:
                errors.append(exc)
        return errors

    def _log_stop_errors(self, errors: list[Exception]) -> None:
        for error in errors:
            self.logger.error("stopping a module failed", extra=attrs.err(error))