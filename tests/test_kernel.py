import asyncio
import logging

import pytest

from popcorn.bus import Bus, BusConfig
from popcorn.events import (
    EVENT_SOURCE_KERNEL,
    ModuleStarted,
    ModuleState,
    ModuleStatusChanged,
    new_event,
)
from popcorn.kernel import (
    Kernel,
    KernelUnhealthyError,
    ModRecipe,
    Module,
    ModuleStateStore,
)

LOGGER = logging.getLogger("popcorn.tests")


def _started_ids(events):
    return [e.payload.id for e in events if isinstance(e.payload, ModuleStarted)]


def _recording_module(module_id, started, stopped, dependencies=(), events=None):
    async def start():
        started.append(module_id)

        async def stop():
            stopped.append(module_id)

        return stop

    return Module(ModRecipe(id=module_id, start=start, dependencies=dependencies, events=events))


def test_state_store_defaults_to_unknown_and_can_be_set():
    store = ModuleStateStore()
    assert store.value == ModuleState.UNKNOWN
    store.value = ModuleState.OK
    assert store.value == ModuleState.OK


def test_state_store_compare_and_swap():
    store = ModuleStateStore()
    assert store.compare_and_swap(ModuleState.UNKNOWN, ModuleState.OK) is True
    assert store.value == ModuleState.OK
    assert store.compare_and_swap(ModuleState.UNKNOWN, ModuleState.NOK) is False
    assert store.value == ModuleState.OK


async def _noop_start():
    return None


@pytest.mark.parametrize(
    "recipe, message",
    [
        (ModRecipe(id="", start=_noop_start), "id not set"),
        (ModRecipe(id=EVENT_SOURCE_KERNEL, start=_noop_start), "reserved by the kernel"),
        (ModRecipe(id="x", start=None), "start function not set"),
    ],
)
def test_invalid_recipe_is_rejected(recipe, message):
    with pytest.raises(ValueError, match=message):
        Module(recipe)


def test_module_keeps_recipe_values():
    queue = asyncio.Queue()
    module = Module(ModRecipe(id="m", start=_noop_start, dependencies=["a", "b"], events=queue))
    assert module.id == "m"
    assert module.dependencies == ("a", "b")
    assert module.events is queue
    assert module.stop_func is None


def test_duplicate_module_ids_are_rejected():
    first = Module(ModRecipe(id="dup", start=_noop_start))
    second = Module(ModRecipe(id="dup", start=_noop_start))
    with pytest.raises(ValueError, match="duplicate module id: dup, passed at indexes: 0 and 1"):
        Kernel(Bus(), LOGGER, first, second)


def test_kernel_fills_bus_defaults():
    bus = Bus(BusConfig(send_event_timeout=0))
    Kernel(bus, LOGGER)
    assert bus.timeout == 1.0
    assert bus.logger is LOGGER


@pytest.mark.asyncio
async def test_dependent_module_is_started_after_its_dependency_and_receives_missed_events():
    bus = Bus()
    a_queue: asyncio.Queue = asyncio.Queue()
    received = []
    start_order = []

    async def consume():
        while True:
            event = await a_queue.get()
            received.append(event)
            payload = event.payload
            if isinstance(payload, ModuleStarted) and payload.id == "a":
                await bus.send(
                    new_event(
                        "a",
                        ModuleStatusChanged(
                            id="a",
                            from_state=ModuleState.OK,
                            to_state=ModuleState.NOK,
                            cause="the other module has started",
                        ),
                    )
                )

    async def start_a():
        start_order.append("a")

        async def stop():
            start_order.append("a stopped")

        return stop

    async def start_b():
        start_order.append("b")
        return None

    mod_a = Module(ModRecipe(id="a", dependencies=["b"], events=a_queue, start=start_a))
    mod_b = Module(ModRecipe(id="b", start=start_b))
    kernel = Kernel(bus, LOGGER, mod_a, mod_b, health_tick=0.01)

    consumer = asyncio.create_task(consume())
    try:
        with pytest.raises(KernelUnhealthyError) as info:
            await kernel.start()
    finally:
        consumer.cancel()

    assert "a" in str(info.value)
    assert str(info.value).startswith("kernel is unhealthy, kernel state is NOK")
    assert _started_ids(received) == ["b", "a"]
    assert start_order == ["b", "a", "a stopped"]


@pytest.mark.asyncio
async def test_late_module_receives_backlog_before_its_own_start_event():
    bus = Bus()
    started, stopped = [], []
    c_queue: asyncio.Queue = asyncio.Queue()
    modules = [
        _recording_module("c", started, stopped, dependencies=["b"], events=c_queue),
        _recording_module("b", started, stopped, dependencies=["a"]),
        _recording_module("a", started, stopped),
    ]
    kernel = Kernel(bus, LOGGER, *modules, health_tick=0.01)

    with pytest.raises(TimeoutError):
        async with asyncio.timeout(0.1):
            await kernel.start()

    delivered = []
    while not c_queue.empty():
        delivered.append(c_queue.get_nowait())
    assert started == ["a", "b", "c"]
    assert _started_ids(delivered) == ["a", "b", "c"]
    assert [e.payload.order for e in delivered] == [0, 1, 2]


@pytest.mark.asyncio
async def test_cancellation_stops_modules_in_start_order():
    started, stopped = [], []
    modules = [
        _recording_module("second", started, stopped, dependencies=["first"]),
        _recording_module("first", started, stopped),
    ]
    kernel = Kernel(Bus(), LOGGER, *modules, health_tick=0.01)

    with pytest.raises(TimeoutError):
        async with asyncio.timeout(0.1):
            await kernel.start()

    assert stopped == ["first", "second"]


@pytest.mark.asyncio
async def test_start_failure_is_raised_and_started_modules_are_stopped():
    started, stopped = [], []

    async def failing_start():
        raise OSError("boom")

    good = _recording_module("good", started, stopped)
    bad = Module(ModRecipe(id="bad", start=failing_start, dependencies=["good"]))
    kernel = Kernel(Bus(), LOGGER, good, bad, health_tick=0.01)

    with pytest.raises(RuntimeError, match="starting a module: bad") as info:
        await kernel.start()

    assert isinstance(info.value.__cause__, OSError)
    assert stopped == ["good"]


@pytest.mark.asyncio
async def test_circular_dependencies_are_rejected():
    started, stopped = [], []
    modules = [
        _recording_module("x", started, stopped, dependencies=["y"]),
        _recording_module("y", started, stopped, dependencies=["x"]),
    ]
    kernel = Kernel(Bus(), LOGGER, *modules, health_tick=0.01)

    with pytest.raises(ValueError, match="cannot resolve module dependencies"):
        await kernel.start()
    assert started == []


@pytest.mark.asyncio
async def test_missing_dependency_is_rejected():
    started, stopped = [], []
    modules = [
        _recording_module("ok", started, stopped),
        _recording_module("needs", started, stopped, dependencies=["absent"]),
    ]
    kernel = Kernel(Bus(), LOGGER, *modules, health_tick=0.01)

    with pytest.raises(ValueError, match="absent"):
        await kernel.start()
    assert started == ["ok"]
    assert stopped == ["ok"]


@pytest.mark.asyncio
async def test_unhealthy_kernel_groups_stop_errors():
    bus = Bus()

    async def start():
        await bus.send(
            new_event(
                "sick",
                ModuleStatusChanged(
                    id="sick",
                    from_state=ModuleState.OK,
                    to_state=ModuleState.NOK,
                    cause="broken",
                ),
            )
        )

        async def stop():
            raise ValueError("cannot stop")

        return stop

    kernel = Kernel(bus, LOGGER, Module(ModRecipe(id="sick", start=start)), health_tick=0.01)

    with pytest.raises(ExceptionGroup) as info:
        await kernel.start()

    kinds = [type(e) for e in info.value.exceptions]
    assert kinds == [KernelUnhealthyError, ValueError]
    assert "module sick reported: broken" in str(info.value.exceptions[0])
    assert kernel.state.value == ModuleState.NOK