"""Example application: two HTTP servers and a pinger started by a kernel."""

from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

import aiohttp
from aiohttp import web

from .bus import Bus, BusError
from .events import Event, ModuleStarted, ModuleState, ModuleStatusChanged, new_event
from .kernel import Kernel, ModRecipe, Module, ModuleStateStore, StopFunc

HTTP_MODULE_ID = "popcorn.demo.HttpModule"
PINGER_MODULE_ID = "popcorn.demo.PingerModule"

_PINGER_QUEUE_SIZE = 10

log = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


async def dummy_handler(request: web.Request) -> web.Response:
    """Answer every request with the host it was addressed to."""
    log.info("received request on: %s", request.host)
    return web.Response(text=request.host)


@dataclass(frozen=True)
class HttpServerListens:
    """Sent by an :class:`HttpModule` once its server accepts connections."""

    url: str


@dataclass
class HttpConfig:
    """Settings of an :class:`HttpModule`.

    ``host`` is ``[address]:port``; an empty address listens on every IPv4
    interface.  ``server_opt`` may adjust the application before it serves.
    """

    mod_id: str = ""
    host: str = ":8080"
    handler: Handler = dummy_handler
    server_opt: Callable[[web.Application], None] | None = None
    start_delay: float = 0.0
    bus: Bus | None = None


def _split_host(host: str) -> tuple[str, int]:
    address, sep, port = host.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {host!r}")
    if not port.isdigit():
        raise ValueError(f"invalid port in address {host!r}")
    return address or "0.0.0.0", int(port)


class HttpModule:
    """Reusable module running an HTTP server.

    ``url`` is set and ``state`` is OK while the server is running.
    """

    def __init__(self, config: HttpConfig) -> None:
        self.config = config
        self.state = ModuleStateStore()
        self.url: str | None = None

    @property
    def id(self) -> str:
        return self.config.mod_id or HTTP_MODULE_ID

    def recipe(self) -> ModRecipe:
        """Recipe of a module that starts the server and announces its URL."""
        module_id = self.id
        config = self.config

        async def start() -> StopFunc:
            await asyncio.sleep(config.start_delay)
            app = web.Application()
            if config.server_opt is not None:
                config.server_opt(app)
            app.router.add_route("*", "/{tail:.*}", config.handler)
            runner = web.AppRunner(app)
            await runner.setup()
            try:
                address, port = _split_host(config.host)
                await web.TCPSite(runner, address, port).start()
            except (OSError, ValueError) as exc:
                await runner.cleanup()
                raise OSError(f"listening on tcp: {config.host}, {exc}") from exc

            bound_address, bound_port = runner.addresses[0][:2]
            url = f"http://{bound_address}:{bound_port}"
            log.info("starting http server on: %r", config.host)

            if config.bus is not None:
                event = new_event(module_id, HttpServerListens(url=url))
                try:
                    await config.bus.send(event)
                except BusError as exc:
                    await runner.cleanup()
                    raise RuntimeError(f"sending event: {event.log_value()}, {exc}") from exc

            self.url = url
            self.state.value = ModuleState.OK

            async def stop() -> None:
                log.info("stopping http server on: %r", config.host)
                try:
                    await runner.cleanup()
                finally:
                    self.url = None
                    self.state.value = ModuleState.UNKNOWN

            return stop

        return ModRecipe(id=module_id, start=start)


async def wait_for_http_addresses(module_id: str, queue: asyncio.Queue) -> list[str]:
    """Collect announced server URLs until the module ``module_id`` has started."""
    addrs: list[str] = []
    while True:
        event: Event = await queue.get()
        match event.payload:
            case HttpServerListens(url=url):
                addrs.append(url)
            case ModuleStarted(id=started_id) if started_id == module_id:
                return addrs


class Pinger:
    """Periodically sends GET requests to a list of addresses."""

    def __init__(self, addrs: Iterable[str] = (), tick: float = 1.0) -> None:
        self.addrs = list(addrs)
        self.tick = tick
        self._session: aiohttp.ClientSession | None = None
        self._closed = False

    async def periodically_ping(self) -> None:
        """Ping every address once per tick until closed or cancelled."""
        log.info("starting pinger with tick: %s", self.tick)
        try:
            while True:
                await asyncio.sleep(self.tick)
                if self._closed:
                    log.info("pinger closed")
                    return
                log.info("tick: %s", datetime.now())
                for addr in list(self.addrs):
                    try:
                        await self.ping(addr)
                    except (aiohttp.ClientError, TimeoutError, ValueError) as exc:
                        log.info("failed to ping %r, %s", addr, exc)
        except asyncio.CancelledError:
            log.info("stopping pinger")
            raise

    async def ping(self, addr: str) -> str:
        """Send one GET request and return the response body."""
        if self._closed:
            raise RuntimeError("pinger is closed")
        if self._session is None:
            self._session = aiohttp.ClientSession()
        log.info("pinging %r", addr)
        async with self._session.get(addr) as response:
            body = await response.text()
            log.info("pinged %r, status: %r, body: %r", addr, response.status, body)
        return body

    async def close(self) -> None:
        """Stop pinging and release the HTTP client."""
        self._closed = True
        if self._session is not None:
            await self._session.close()
            self._session = None


class PingerModule:
    """Module pinging the HTTP servers announced before it started."""

    def __init__(self, tick: float = 1.0, bus: Bus | None = None) -> None:
        self.id = PINGER_MODULE_ID
        self.tick = tick
        self.bus = bus
        self.pinger: Pinger | None = None

    def recipe(self, *args: str) -> ModRecipe:
        """Recipe of the module, started after the modules named in ``args``."""
        events: asyncio.Queue = asyncio.Queue(maxsize=_PINGER_QUEUE_SIZE)

        async def start() -> StopFunc:
            pinger = Pinger(tick=self.tick)
            self.pinger = pinger
            task = asyncio.create_task(self._run(pinger, events))

            async def stop() -> None:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                await pinger.close()

            return stop

        return ModRecipe(id=self.id, start=start, dependencies=tuple(args), events=events)

    async def _run(self, pinger: Pinger, events: asyncio.Queue) -> None:
        try:
            addrs = await wait_for_http_addresses(self.id, events)
        except Exception as exc:
            await self._report_failure(exc)
            addrs = []
        pinger.addrs = addrs
        await pinger.periodically_ping()

    async def _report_failure(self, exc: Exception) -> None:
        if self.bus is None:
            return
        event = new_event(
            self.id,
            ModuleStatusChanged(
                id=self.id,
                from_state=ModuleState.UNKNOWN,
                to_state=ModuleState.NOK,
                cause=f"waiting for addresses of http servers failed: {exc}",
            ),
        )
        try:
            await self.bus.send(event)
        except BusError as send_error:
            log.info("sending event failed: %s", send_error)


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="popcorn-demo", description="Run two HTTP servers and a pinger."
    )
    parser.add_argument("--duration", type=float, default=15.0, help="seconds to run")
    parser.add_argument("--first-host", default=":3000")
    parser.add_argument("--second-host", default=":3001")
    parser.add_argument("--first-delay", type=float, default=2.0)
    parser.add_argument("--second-delay", type=float, default=5.0)
    parser.add_argument("--tick", type=float, default=1.0, help="seconds between pings")
    return parser.parse_args(argv)


async def _run_demo(args: argparse.Namespace) -> None:
    bus = Bus()
    first = HttpModule(HttpConfig(host=args.first_host, start_delay=args.first_delay, bus=bus))
    second_port = args.second_host.rpartition(":")[2]
    second = HttpModule(
        HttpConfig(
            mod_id=f"{HTTP_MODULE_ID}@{second_port}",
            host=args.second_host,
            start_delay=args.second_delay,
            bus=bus,
        )
    )
    pinger = PingerModule(tick=args.tick, bus=bus)

    first_recipe = first.recipe()
    second_recipe = second.recipe()
    modules = [
        Module(first_recipe),
        Module(second_recipe),
        Module(pinger.recipe(first_recipe.id, second_recipe.id)),
    ]
    kernel = Kernel(bus, logging.getLogger("popcorn"), *modules)
    async with asyncio.timeout(args.duration):
        await kernel.start()


def main(argv: Sequence[str] | None = None) -> int:
    """Run the demo for a limited time; the kernel stopping is reported as an error."""
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(_run_demo(args))
    except Exception as exc:
        log.error("%s", exc if str(exc) else type(exc).__name__)
        return 1
    return 0