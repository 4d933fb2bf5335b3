"""Tests for fan-out joins and readiness polling."""

import asyncio
import logging

import pytest

from clusterdeploy.errors import ClusterNotReadyError, CommandFailedError, WaitTimeoutError
from clusterdeploy.fanout import fan_out
from clusterdeploy.pipeline import await_ready
from clusterdeploy.wait import wait_until


class TestFanOut:
    @pytest.mark.asyncio
    async def test_results_in_item_order(self) -> None:
        async def slow_echo(i: int) -> int:
            await asyncio.sleep(0.01 * (3 - i))
            return i * 10

        assert await fan_out([1, 2, 3], slow_echo) == [10, 20, 30]

    @pytest.mark.asyncio
    async def test_empty(self) -> None:
        async def never(_: int) -> int:
            raise AssertionError("not called")

        assert await fan_out([], never) == []

    @pytest.mark.asyncio
    async def test_returns_failing_nodes_error(self, dispatcher) -> None:
        """Three nodes, the second fails: that error comes back and nothing hangs."""
        nodes = dispatcher.get_nodes()
        finished: list[str] = []

        async def run(node) -> None:
            if node is nodes[1]:
                raise CommandFailedError(f"setup on {node.name}", 1)
            await asyncio.sleep(0.01)
            finished.append(node.name)

        with pytest.raises(CommandFailedError) as exc_info:
            await asyncio.wait_for(fan_out(nodes, run), timeout=2)
        assert nodes[1].name in str(exc_info.value)
        # Siblings are waited for, not abandoned
        assert sorted(finished) == sorted([nodes[0].name, nodes[2].name])

    @pytest.mark.asyncio
    async def test_cancel_on_error_stops_siblings(self) -> None:
        cancelled: list[int] = []

        async def run(i: int) -> None:
            if i == 0:
                raise RuntimeError("boom")
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(i)
                raise

        with pytest.raises(RuntimeError, match="boom"):
            await asyncio.wait_for(fan_out(range(3), run, cancel_on_error=True), timeout=2)
        assert sorted(cancelled) == [1, 2]

    @pytest.mark.asyncio
    async def test_extra_errors_are_logged_and_noted(self, caplog) -> None:
        async def run(i: int) -> None:
            await asyncio.sleep(0.01 * i)
            raise RuntimeError(f"failure {i}")

        with caplog.at_level(logging.WARNING, logger="clusterdeploy.fanout"):
            with pytest.raises(RuntimeError, match="failure 0") as exc_info:
                await fan_out(range(3), run)
        assert exc_info.value.__notes__ == ["also failed: failure 1", "also failed: failure 2"]
        assert "failure 2" in caplog.text

    @pytest.mark.asyncio
    async def test_cancelling_caller_cancels_siblings(self) -> None:
        cancelled: list[int] = []

        async def run(i: int) -> None:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(i)
                raise

        task = asyncio.ensure_future(fan_out(range(2), run))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert sorted(cancelled) == [0, 1]


class TestWaitUntil:
    @pytest.mark.asyncio
    async def test_checks_immediately(self) -> None:
        calls = 0

        async def ready() -> bool:
            nonlocal calls
            calls += 1
            return True

        await wait_until(ready, timeout=1, poll=10)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_times_out(self) -> None:
        async def never() -> bool:
            return False

        with pytest.raises(WaitTimeoutError):
            await wait_until(never, timeout=0.2, poll=0.05)

    @pytest.mark.asyncio
    async def test_abandons_slow_check_at_deadline(self) -> None:
        async def hangs() -> bool:
            await asyncio.sleep(10)
            return True

        loop = asyncio.get_running_loop()
        start = loop.time()
        with pytest.raises(WaitTimeoutError):
            await wait_until(hangs, timeout=0.2, poll=0.05)
        assert loop.time() - start < 2


class TestAwaitReady:
    """Readiness with the default one-second poll and five-second timeout."""

    @pytest.mark.asyncio
    async def test_ready_after_four_seconds(self, make_dispatcher) -> None:
        dispatcher = make_dispatcher(num_nodes=3, ready_after=4)
        await await_ready(dispatcher, timeout=5, poll=1)
        assert dispatcher.ready_calls == 5

    @pytest.mark.asyncio
    async def test_never_ready(self, make_dispatcher) -> None:
        dispatcher = make_dispatcher(num_nodes=3, ready_after=1_000)
        loop = asyncio.get_running_loop()
        start = loop.time()
        with pytest.raises(ClusterNotReadyError, match="Cluster not ready for deployment"):
            await await_ready(dispatcher, timeout=5, poll=1)
        assert 4.5 < loop.time() - start < 7
