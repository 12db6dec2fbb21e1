import asyncio

from gatewaywarden.cancellation import CancellationToken
from gatewaywarden.events import EventFeed
from gatewaywarden.monitor import HealthMonitorLoop
from gatewaywarden.state import MonitorState, MonitorStateStore


class _ScriptedProbe:
    def __init__(self, results: list[bool]) -> None:
        self.results = list(results)
        self.calls = 0
        self.ports: list[int] = []

    async def __call__(self, port: int, cancel: CancellationToken) -> bool:
        self.calls += 1
        self.ports.append(port)
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _health_lines(events: EventFeed) -> list[str]:
    return [line for line in events.lines() if line.startswith("Gateway health check")]


def test_start_without_target_returns_false() -> None:
    async def _run() -> None:
        events = EventFeed()
        loop = HealthMonitorLoop(MonitorStateStore(), _ScriptedProbe([True]), events, interval_seconds=0.01)
        assert loop.start() is False
        assert "No active monitor port." in events.lines()

    asyncio.run(_run())


def test_loop_logs_first_tick_and_transitions_only() -> None:
    async def _run() -> None:
        store = MonitorStateStore()
        store.set(MonitorState.new(18789))
        events = EventFeed()
        probe = _ScriptedProbe([True, True, True, False, False])
        loop = HealthMonitorLoop(store, probe, events, interval_seconds=0.001)

        assert loop.start() is True
        assert loop.start() is True
        assert "Gateway monitoring already running." in events.lines()
        await _wait_for(lambda: probe.calls >= 6)
        await loop.stop_and_wait()

        assert loop.is_running is False
        assert _health_lines(events) == [
            "Gateway health check: healthy on port 18789.",
            "Gateway health check: unhealthy on port 18789.",
        ]
        state = store.get()
        assert state is not None
        assert state.is_healthy is False
        assert state.last_checked is not None
        assert events.status.startswith("Port 18789: unreachable.")

    asyncio.run(_run())


def test_loop_exits_when_monitoring_paused() -> None:
    async def _run() -> None:
        store = MonitorStateStore()
        store.set(MonitorState.new(1))
        probe = _ScriptedProbe([True])
        loop = HealthMonitorLoop(store, probe, EventFeed(), interval_seconds=0.001)
        loop.start()
        await _wait_for(lambda: probe.calls >= 1)
        store.mutate(lambda s: s.with_monitoring(False))
        assert loop.task is not None
        await asyncio.wait_for(loop.task, timeout=2)
        assert loop.is_running is False

    asyncio.run(_run())


def test_result_for_replaced_target_is_discarded() -> None:
    async def _run() -> None:
        store = MonitorStateStore()
        store.set(MonitorState.new(1111))
        release = asyncio.Event()

        async def _slow_probe(port: int, cancel: CancellationToken) -> bool:
            await release.wait()
            return True

        loop = HealthMonitorLoop(store, _slow_probe, EventFeed(), interval_seconds=0.001)
        check = asyncio.create_task(loop.check_now())
        await asyncio.sleep(0)
        store.set(MonitorState.new(2222))
        release.set()
        await check

        state = store.get()
        assert state is not None
        assert state.port == 2222
        assert state.is_healthy is None

    asyncio.run(_run())


def test_probe_exception_counts_as_unhealthy() -> None:
    async def _run() -> None:
        store = MonitorStateStore()
        store.set(MonitorState.new(3))
        calls = 0

        async def _broken(port: int, cancel: CancellationToken) -> bool:
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        loop = HealthMonitorLoop(store, _broken, EventFeed(), interval_seconds=0.001)
        loop.start()
        await _wait_for(lambda: calls >= 2)
        await loop.stop_and_wait()
        state = store.get()
        assert state is not None and state.is_healthy is False

    asyncio.run(_run())
