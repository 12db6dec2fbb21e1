import asyncio

import pytest

from gatewaywarden.cancellation import CancellationToken
from gatewaywarden.errors import OperationCancelled


def test_cancel_runs_callbacks_once_and_registers_late_callbacks_immediately() -> None:
    token = CancellationToken()
    calls: list[str] = []
    token.register(lambda: calls.append("first"))
    token.cancel()
    token.cancel()
    token.register(lambda: calls.append("late"))
    assert calls == ["first", "late"]
    assert token.is_cancelled is True


def test_disposed_registration_does_not_run() -> None:
    token = CancellationToken()
    calls: list[str] = []
    registration = token.register(lambda: calls.append("x"))
    registration.dispose()
    token.cancel()
    assert calls == []


def test_child_follows_parent_but_not_the_other_way() -> None:
    parent = CancellationToken()
    child = parent.child()
    sibling = parent.child()
    child.cancel()
    assert parent.is_cancelled is False
    parent.cancel()
    assert sibling.is_cancelled is True


def test_detached_child_ignores_parent() -> None:
    parent = CancellationToken()
    with parent.child() as child:
        pass
    parent.cancel()
    assert child.is_cancelled is False


def test_failing_callback_does_not_block_others() -> None:
    token = CancellationToken()
    calls: list[str] = []

    def _boom() -> None:
        raise RuntimeError("boom")

    token.register(_boom)
    token.register(lambda: calls.append("ok"))
    token.cancel()
    assert calls == ["ok"]


def test_sleep_returns_after_timeout_when_not_cancelled() -> None:
    async def _run() -> None:
        token = CancellationToken()
        await token.sleep(0.01)
        await token.sleep(0)

    asyncio.run(_run())


def test_sleep_raises_when_cancelled_meanwhile() -> None:
    async def _run() -> None:
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(OperationCancelled):
            await token.sleep(5.0)

    asyncio.run(_run())


def test_run_abandons_awaitable_on_cancel() -> None:
    async def _run() -> None:
        token = CancellationToken()
        inner = asyncio.ensure_future(asyncio.sleep(10))
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(OperationCancelled):
            await token.run(inner)
        await asyncio.sleep(0)
        assert inner.cancelled()

    asyncio.run(_run())


def test_run_returns_result() -> None:
    async def _value() -> int:
        return 7

    async def _run() -> int:
        return await CancellationToken().run(_value())

    assert asyncio.run(_run()) == 7


def test_raise_if_cancelled() -> None:
    token = CancellationToken()
    token.raise_if_cancelled()
    token.cancel()
    with pytest.raises(OperationCancelled):
        token.raise_if_cancelled()
