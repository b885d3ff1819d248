from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from buildhelper.errors import UpstreamProtocolError, UpstreamUnreachableError
from buildhelper.poller import BuildPoller, PeriodicTask, RelayFetcher, follow_logs

QUEUE_URL = "https://ci.example.com/queue/item/42/"
STARTED = {"executable": {"number": 7, "url": "https://ci.example.com/job/setup/7/"}}


class FakeFetcher:
    """Replays scripted queue and log results; exceptions are raised instead of returned."""

    def __init__(self, queue: list[Any], logs: list[Any]) -> None:
        self._queue = list(queue)
        self._logs = list(logs)
        self.queue_calls: list[str] = []
        self.log_calls: list[Any] = []

    @staticmethod
    def _next(items: list[Any]) -> Any:
        item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, Exception):
            raise item
        return item

    def fetch_queue_status(self, queue_url: str) -> Any:
        self.queue_calls.append(queue_url)
        return self._next(self._queue)

    def fetch_build_log(self, build_id: Any) -> str:
        self.log_calls.append(build_id)
        return self._next(self._logs)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def test_executable_moves_poller_to_running_and_fetches_log_immediately() -> None:
    fetcher = FakeFetcher(queue=[{"executable": None}, STARTED], logs=["Started by user u\n"])
    started = []
    cancel_results = []

    async def scenario() -> BuildPoller:
        poller = BuildPoller(fetcher, queue_interval=0.01, log_interval=30, on_started=started.append)
        poller.start(QUEUE_URL)
        assert poller.state == "queued"

        original_cancel = poller.queue_timer.cancel

        def counting_cancel() -> bool:
            result = original_cancel()
            cancel_results.append(result)
            return result

        poller.queue_timer.cancel = counting_cancel
        await _wait_until(lambda: bool(fetcher.log_calls))
        # Several queue periods pass; the cancelled timer must stay silent.
        await asyncio.sleep(0.05)
        assert poller.state == "running"
        poller.stop()
        await poller.wait()
        return poller

    poller = asyncio.run(scenario())

    assert fetcher.queue_calls == [QUEUE_URL, QUEUE_URL]
    assert cancel_results.count(True) == 1
    assert poller.queue_timer.cancelled
    assert fetcher.log_calls == [7]
    assert poller.executable is not None
    assert poller.executable.build_number == 7
    assert poller.executable.build_url == "https://ci.example.com/job/setup/7/"
    assert [ref.build_number for ref in started] == [7]
    assert poller.last_log == "Started by user u\n"
    assert poller.state == "stopped"


def test_poller_stays_queued_until_executable_appears() -> None:
    fetcher = FakeFetcher(queue=[{"why": "Waiting for next available executor"}], logs=[""])

    async def scenario() -> BuildPoller:
        poller = BuildPoller(fetcher, queue_interval=0.01, log_interval=0.01)
        poller.start(QUEUE_URL)
        await _wait_until(lambda: len(fetcher.queue_calls) >= 4)
        assert poller.state == "queued"
        assert poller.log_timer is None
        poller.stop()
        await poller.wait()
        return poller

    poller = asyncio.run(scenario())

    assert poller.executable is None
    assert fetcher.log_calls == []
    assert poller.state == "stopped"


def test_fetch_failures_are_reported_and_polling_continues() -> None:
    fetcher = FakeFetcher(
        queue=[UpstreamUnreachableError("timed out"), UpstreamProtocolError("not json"), STARTED],
        logs=[UpstreamUnreachableError("reset"), "line 1\n"],
    )
    errors: list[tuple[str, str]] = []
    logs: list[str] = []

    async def scenario() -> None:
        poller = BuildPoller(
            fetcher,
            queue_interval=0.01,
            log_interval=0.01,
            on_log=logs.append,
            on_error=lambda operation, exc: errors.append((operation, str(exc))),
        )
        poller.start(QUEUE_URL)
        await _wait_until(lambda: bool(logs))
        poller.stop()
        await poller.wait()

    asyncio.run(scenario())

    assert errors[:3] == [
        ("queue-status", "timed out"),
        ("queue-status", "not json"),
        ("build-log", "reset"),
    ]
    assert logs[0] == "line 1\n"
    assert len(fetcher.queue_calls) == 3


def test_log_loop_rereads_full_log_every_tick() -> None:
    fetcher = FakeFetcher(queue=[STARTED], logs=["a\n", "a\nb\n", "a\nb\nc\n"])
    logs: list[str] = []

    async def scenario() -> None:
        poller = BuildPoller(fetcher, queue_interval=0.01, log_interval=0.01, on_log=logs.append)
        poller.start(QUEUE_URL)
        await _wait_until(lambda: len(logs) >= 4)
        poller.stop()
        await poller.wait()

    asyncio.run(scenario())

    assert logs[:3] == ["a\n", "a\nb\n", "a\nb\nc\n"]
    assert set(fetcher.log_calls) == {7}


def test_stop_before_transition_cancels_queue_timer() -> None:
    fetcher = FakeFetcher(queue=[STARTED], logs=["x"])

    async def scenario() -> BuildPoller:
        poller = BuildPoller(fetcher, queue_interval=30, log_interval=30)
        poller.start(QUEUE_URL)
        poller.stop()
        await poller.wait()
        return poller

    poller = asyncio.run(scenario())

    assert fetcher.queue_calls == []
    assert poller.queue_timer.cancelled
    assert poller.log_timer is None


def test_poller_cannot_be_started_twice() -> None:
    fetcher = FakeFetcher(queue=[{}], logs=[""])

    async def scenario() -> None:
        poller = BuildPoller(fetcher, queue_interval=30)
        poller.start(QUEUE_URL)
        try:
            with pytest.raises(RuntimeError):
                poller.start(QUEUE_URL)
        finally:
            poller.stop()
            await poller.wait()

    asyncio.run(scenario())


def test_periodic_task_cancel_reports_whether_it_stopped_anything() -> None:
    calls: list[int] = []

    async def tick() -> None:
        calls.append(1)

    async def scenario() -> None:
        timer = PeriodicTask("demo", 0.01, tick, immediate=True)
        assert timer.cancel() is False
        timer.start()
        await _wait_until(lambda: len(calls) >= 2)
        assert timer.active
        assert timer.cancel() is True
        assert timer.cancel() is False
        await timer.wait()
        assert not timer.active

    asyncio.run(scenario())


def test_periodic_task_rejects_non_positive_period() -> None:
    async def tick() -> None:
        return None

    with pytest.raises(ValueError):
        PeriodicTask("demo", 0, tick)


def test_follow_logs_stops_when_cancelled() -> None:
    fetcher = FakeFetcher(queue=[{}], logs=["log"])

    async def scenario() -> None:
        task = asyncio.ensure_future(follow_logs(fetcher, "12", log_interval=0.01))
        await _wait_until(lambda: len(fetcher.log_calls) >= 2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        seen = len(fetcher.log_calls)
        await asyncio.sleep(0.05)
        assert len(fetcher.log_calls) == seen

    asyncio.run(scenario())

    assert set(fetcher.log_calls) == {"12"}


def test_relay_fetcher_binds_credentials() -> None:
    class RecordingRelay:
        def __init__(self) -> None:
            self.calls: list[tuple] = []

        def fetch_queue_status(self, queue_url: str, username: str, api_token: str) -> dict:
            self.calls.append(("queue", queue_url, username, api_token))
            return {}

        def fetch_build_log(self, build_id: Any, username: str, api_token: str) -> str:
            self.calls.append(("log", build_id, username, api_token))
            return ""

    relay = RecordingRelay()
    fetcher = RelayFetcher(relay, "u", "t")
    fetcher.fetch_queue_status(QUEUE_URL)
    fetcher.fetch_build_log(7)

    assert relay.calls == [("queue", QUEUE_URL, "u", "t"), ("log", 7, "u", "t")]


def test_unexpected_fetch_error_does_not_halt_polling() -> None:
    fetcher = FakeFetcher(queue=[ValueError("unknown url type"), {"executable": None}], logs=[""])

    async def scenario() -> BuildPoller:
        poller = BuildPoller(fetcher, queue_interval=0.01, log_interval=30)
        poller.start(QUEUE_URL)
        await _wait_until(lambda: len(fetcher.queue_calls) >= 3)
        assert poller.state == "queued"
        poller.stop()
        await poller.wait()
        return poller

    poller = asyncio.run(scenario())

    assert poller.executable is None


def test_failing_log_callback_does_not_halt_log_loop() -> None:
    fetcher = FakeFetcher(queue=[STARTED], logs=["a\n", "a\nb\n"])
    seen: list[str] = []

    def on_log(text: str) -> None:
        seen.append(text)
        if len(seen) == 1:
            raise KeyError("display")

    async def scenario() -> None:
        poller = BuildPoller(fetcher, queue_interval=0.01, log_interval=0.01, on_log=on_log)
        poller.start(QUEUE_URL)
        await _wait_until(lambda: len(seen) >= 2)
        assert poller.state == "running"
        poller.stop()
        await poller.wait()

    asyncio.run(scenario())

    assert seen[:2] == ["a\n", "a\nb\n"]
