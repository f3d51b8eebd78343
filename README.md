# popcorn

`popcorn` is a small asyncio framework for applications built from modules.
Each module knows how to start and stop itself. The kernel starts the
modules in dependency order, passes events between them over a bus, watches
their health and stops them again when the application shuts down.

## Building blocks

- **`popcorn.events`** holds the `Event` record (`kind`, `source`, `at`,
  `payload`) and the two events the kernel understands, `ModuleStarted` and
  `ModuleStatusChanged`. A module reports its health with a `ModuleState`:
  `UNKNOWN`, `OK`, `NOK` or `TEMP_NOK`. `new_event(source, payload)` builds
  an event whose kind is the name of the payload's type.
  `kernel_event(payload)` does the same with `"kernel"` as the source.
  `Event.log_value()` gives a compact description for log records.
- **`popcorn.bus`** provides `Bus`, which delivers every event to every
  registered listener queue (`add_listener`, `remove_listener`). Each
  delivery is limited by `BusConfig.send_event_timeout` (default one second),
  and all deliveries of one event together are limited to one second.
  Listeners that could not be reached are named in a `BusError`. While
  buffering is on (`start_buffering` / `stop_buffering`), the bus keeps a
  copy of each event it sends, available from `buffered_events()`.
- **`popcorn.kernel`** provides the following:
  - `ModRecipe` describes a module: `id`, `start`, `dependencies` and an
    optional `events` queue.
  - `Module` is built from a recipe and raises `ValueError` for an empty id,
    the reserved id `"kernel"`, or a missing start function.
  - `ModuleStateStore` is a thread-safe state holder with a `value` property
    and `compare_and_swap`.
  - `Kernel(bus, logger, *modules, health_tick=1.0, stop_timeout=5.0)`
    raises `ValueError` on duplicate module ids.
- **`popcorn.attrs`** holds small helpers, such as `mod_id`, `err`,
  `named_err`, `strings`, `random_id`, `type_of`, `chan` and `named_chan`.
  Each returns a dict that can be passed as `extra=` to a logging call.

## Writing a module

A start function is a coroutine that takes no arguments. It returns either a
stop coroutine or `None`. The stop function is called once, during shutdown.

```python
import asyncio
import logging

from popcorn.bus import Bus
from popcorn.kernel import Kernel, ModRecipe, Module


async def start_database():
    print("database up")

    async def stop():
        print("database down")

    return stop


async def start_api():
    print("api up, database already running")
    return None


async def run():
    bus = Bus(None)
    database = Module(ModRecipe(id="app/database", start=start_database))
    api = Module(ModRecipe(id="app/api", start=start_api, dependencies=["app/database"]))
    kernel = Kernel(bus, logging.getLogger("app"), database, api,
                    health_tick=1.0, stop_timeout=5.0)
    await kernel.start()


asyncio.run(run())
```

## How `Kernel.start()` behaves

1. It starts each module once all the modules it depends on have started.
   - If a start function raises, `start()` raises `RuntimeError`.
   - If the dependencies cannot be resolved (a cycle or an unknown id),
     `start()` raises `ValueError`.
2. After every module is up, it checks the kernel state every `health_tick`
   seconds.
3. It stops the modules in these cases:
   - When it is cancelled, it stops the started modules and re-raises the
     cancellation.
   - When a module sends a `ModuleStatusChanged` event whose `to_state` is
     `ModuleState.NOK`, it stops the started modules and raises
     `KernelUnhealthyError`. If stop functions also failed, it raises an
     `ExceptionGroup` containing both.

All stop functions together are limited to `stop_timeout` seconds. `None`
removes the limit.

## Events

A module that passes an `events` queue in its recipe receives events in this
order:

1. every event sent before it started,
2. the `ModuleStarted` event about itself,
3. every later event.

A module can mark itself unhealthy with a status event, which makes the
kernel shut down:

```python
from popcorn.events import ModuleState, ModuleStatusChanged, new_event

await bus.send(new_event("app/api", ModuleStatusChanged(
    id="app/api", from_state=ModuleState.OK, to_state=ModuleState.NOK,
    cause="lost connection",
)))
```

The kernel reacts only to `NOK`. It does not restart modules, and it treats
`TEMP_NOK` like any other state that is not `NOK`.

## Demo

`popcorn.demo` is an example application built on aiohttp. It runs:

- two `HttpModule` servers, which answer each request with the host it was
  addressed to, and
- a `PingerModule` that depends on both servers.

The pinger learns the server URLs from `HttpServerListens` events. It then
sends a GET request to each URL once per tick. Run it with:

```
popcorn-demo
```

Options:

| Option | Default | Meaning |
| --- | --- | --- |
| `--duration` | 15 | how long the demo runs, in seconds |
| `--first-host` | `:3000` | address of the first server |
| `--second-host` | `:3001` | address of the second server |
| `--first-delay` | 2 | start delay of the first server, in seconds |
| `--second-delay` | 5 | start delay of the second server, in seconds |
| `--tick` | 1 | seconds between pings |

When the duration runs out, the kernel is stopped, and the command exits
with status 1 after logging why.

## Tests

```
pip install -e ".[test]"
pytest
```