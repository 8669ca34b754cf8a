"""Tests for the cooperative CancellationToken."""

from __future__ import annotations

import asyncio

import pytest

from promptgate.gateway.cancellation import CancellationToken, RequestCancelled


class TestCancellationToken:
    def test_initial_state(self):
        token = CancellationToken()
        assert token.cancelled is False
        assert token.reason == ""

    def test_cancel_is_idempotent(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled is True
        assert token.reason == "first"

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("stop")
        with pytest.raises(RequestCancelled) as exc_info:
            token.raise_if_cancelled()
        assert exc_info.value.reason == "stop"

    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        token = CancellationToken()

        async def compute():
            await asyncio.sleep(0)
            return 42

        assert await token.run(compute()) == 42

    @pytest.mark.asyncio
    async def test_run_propagates_exceptions(self):
        token = CancellationToken()

        async def fail():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await token.run(fail())

    @pytest.mark.asyncio
    async def test_run_interrupts_pending_operation(self):
        token = CancellationToken()
        interrupted = asyncio.Event()

        async def slow_read():
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                interrupted.set()
                raise

        asyncio.get_running_loop().call_later(0.01, token.cancel, "caller gave up")
        with pytest.raises(RequestCancelled) as exc_info:
            await asyncio.wait_for(token.run(slow_read()), timeout=5)

        assert exc_info.value.reason == "caller gave up"
        assert interrupted.is_set()

    @pytest.mark.asyncio
    async def test_run_after_cancel_does_not_start_work(self):
        token = CancellationToken()
        token.cancel()
        started = False

        async def work():
            nonlocal started
            started = True

        with pytest.raises(RequestCancelled):
            await token.run(work())
        assert started is False

    @pytest.mark.asyncio
    async def test_wait(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_soon(token.cancel)
        await asyncio.wait_for(token.wait(), timeout=5)
        assert token.cancelled
