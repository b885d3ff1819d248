"""Client-side polling loops that follow a triggered build.

A ``BuildPoller`` watches one queue item. While the item is queued it asks
for the queue status on the queue interval; once the item reports an
``executable`` it cancels that timer, records the build, and starts reading
the build log on the log interval until the caller stops it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

from buildhelper.errors import RelayError
from buildhelper.models import ExecutableReference, parse_executable

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_INTERVAL = 3.0
DEFAULT_LOG_INTERVAL = 5.0


class BuildFetcher(Protocol):
    def fetch_queue_status(self, queue_url: str) -> Any: ...

    def fetch_build_log(self, build_id: Any) -> str: ...


class RelayFetcher:
    """Binds credentials to a relay so the poller only passes ids around."""

    def __init__(self, relay: Any, username: str, api_token: str) -> None:
        self._relay = relay
        self._username = username
        self._api_token = api_token

    def fetch_queue_status(self, queue_url: str) -> Any:
        return self._relay.fetch_queue_status(queue_url, self._username, self._api_token)

    def fetch_build_log(self, build_id: Any) -> str:
        return self._relay.fetch_build_log(build_id, self._username, self._api_token)


class PeriodicTask:
    """Cancellable asyncio timer that awaits ``callback`` every ``period`` seconds.

    Ticks are serialized: the next sleep starts only after the previous
    callback has returned, so a slow call never overlaps the next one.
    """

    def __init__(
        self,
        name: str,
        period: float,
        callback: Callable[[], Awaitable[None]],
        immediate: bool = False,
    ) -> None:
        if period <= 0:
            raise ValueError(f"period must be > 0, got {period}")
        self.name = name
        self.period = period
        self._callback = callback
        self._immediate = immediate
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def active(self) -> bool:
        return self._task is not None and not self._cancelled and not self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError(f"{self.name} timer already started")
        self._task = asyncio.ensure_future(self._run())

    async def _tick(self) -> None:
        try:
            await self._callback()
        except Exception:
            logger.exception("%s tick failed, retrying on next tick", self.name)

    async def _run(self) -> None:
        if self._immediate:
            await self._tick()
        while True:
            await asyncio.sleep(self.period)
            await self._tick()

    def cancel(self) -> bool:
        """Stop the timer. Returns False when it was never started or already stopped."""
        if self._task is None or self._cancelled:
            return False
        self._cancelled = True
        self._task.cancel()
        logger.debug("Cancelled %s timer", self.name)
        return True

    async def wait(self) -> None:
        if self._task is None:
            return
        await asyncio.wait({self._task})


class BuildPoller:
    """Queued -> Running state machine over two independent timers."""

    def __init__(
        self,
        fetcher: BuildFetcher,
        queue_interval: float = DEFAULT_QUEUE_INTERVAL,
        log_interval: float = DEFAULT_LOG_INTERVAL,
        on_started: Optional[Callable[[ExecutableReference], None]] = None,
        on_log: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str, RelayError], None]] = None,
    ) -> None:
        self._fetcher = fetcher
        self.queue_interval = queue_interval
        self.log_interval = log_interval
        self._on_started = on_started
        self._on_log = on_log
        self._on_error = on_error
        self.queue_url = ""
        self.executable: Optional[ExecutableReference] = None
        self.last_log = ""
        self.queue_timer: Optional[PeriodicTask] = None
        self.log_timer: Optional[PeriodicTask] = None

    @property
    def state(self) -> str:
        if self.queue_timer is None and self.log_timer is None:
            return "idle"
        if self.executable is None:
            return "queued" if self.queue_timer is not None and self.queue_timer.active else "stopped"
        return "running" if self.log_timer is not None and self.log_timer.active else "stopped"

    def start(self, queue_url: str) -> None:
        """Begin polling ``queue_url``; must be called from a running event loop."""
        if self.queue_timer is not None or self.log_timer is not None:
            raise RuntimeError("Poller already started")
        self.queue_url = queue_url
        self.queue_timer = PeriodicTask("queue-status", self.queue_interval, self._poll_queue)
        self.queue_timer.start()
        logger.info("Polling queue item %s every %ss", queue_url, self.queue_interval)

    def follow(self, build_id: Any) -> None:
        """Skip the queue phase and only stream the log of a known build."""
        if self.log_timer is not None:
            raise RuntimeError("Log polling already started")
        self._start_logs(build_id)

    def stop(self) -> None:
        for timer in (self.queue_timer, self.log_timer):
            if timer is not None:
                timer.cancel()

    async def wait(self) -> None:
        """Block until both timers have stopped."""
        if self.queue_timer is not None:
            await self.queue_timer.wait()
        if self.log_timer is not None:
            await self.log_timer.wait()

    def _report(self, operation: str, exc: RelayError) -> None:
        logger.warning("%s failed, retrying on next tick: %s", operation, exc)
        if self._on_error is not None:
            self._on_error(operation, exc)

    async def _poll_queue(self) -> None:
        try:
            status = await asyncio.to_thread(self._fetcher.fetch_queue_status, self.queue_url)
        except RelayError as exc:
            self._report("queue-status", exc)
            return
        reference = parse_executable(status)
        if reference is not None:
            self._enter_running(reference)

    def _enter_running(self, reference: ExecutableReference) -> None:
        if self.executable is not None:
            return
        if self.queue_timer is not None and not self.queue_timer.cancel():
            return
        self.executable = reference
        logger.info("Build #%s started: %s", reference.build_number, reference.build_url)
        if self._on_started is not None:
            self._on_started(reference)
        self._start_logs(reference.build_number)

    def _start_logs(self, build_id: Any) -> None:
        async def _fetch_logs() -> None:
            try:
                text = await asyncio.to_thread(self._fetcher.fetch_build_log, build_id)
            except RelayError as exc:
                self._report("build-log", exc)
                return
            self.last_log = text
            if self._on_log is not None:
                self._on_log(text)

        self.log_timer = PeriodicTask("build-log", self.log_interval, _fetch_logs, immediate=True)
        self.log_timer.start()


async def follow_build(
    fetcher: BuildFetcher,
    queue_url: str,
    queue_interval: float = DEFAULT_QUEUE_INTERVAL,
    log_interval: float = DEFAULT_LOG_INTERVAL,
    on_started: Optional[Callable[[ExecutableReference], None]] = None,
    on_log: Optional[Callable[[str], None]] = None,
) -> BuildPoller:
    """Run a poller for ``queue_url`` until the surrounding task is cancelled."""
    poller = BuildPoller(
        fetcher,
        queue_interval=queue_interval,
        log_interval=log_interval,
        on_started=on_started,
        on_log=on_log,
    )
    poller.start(queue_url)
    try:
        await poller.wait()
    finally:
        poller.stop()
    return poller


async def follow_logs(
    fetcher: BuildFetcher,
    build_id: Any,
    log_interval: float = DEFAULT_LOG_INTERVAL,
    on_log: Optional[Callable[[str], None]] = None,
) -> BuildPoller:
    """Stream the log of an already running build until cancelled."""
    poller = BuildPoller(fetcher, log_interval=log_interval, on_log=on_log)
    poller.follow(build_id)
    try:
        await poller.wait()
    finally:
        poller.stop()
    return poller
