"""
Unit tests for the job event channel.
"""

import asyncio

import pytest

from worker.events import EventChannel, BATCH_END, DONE


class TestEventChannel:
    """Test ordered event dispatch."""

    @pytest.mark.asyncio
    async def test_handlers_run_in_registration_order(self):
        channel = EventChannel()
        calls = []

        channel.on(BATCH_END, lambda payload: calls.append(("first", payload)))
        channel.on(BATCH_END, lambda payload: calls.append(("second", payload)))
        await channel.emit(BATCH_END, 1)

        assert calls == [("first", 1), ("second", 1)]

    @pytest.mark.asyncio
    async def test_async_handler_completes_before_emit_returns(self):
        channel = EventChannel()
        calls = []

        async def slow(payload):
            await asyncio.sleep(0.01)
            calls.append("slow")

        channel.on(DONE, slow)
        channel.on(DONE, lambda payload: calls.append("fast"))
        await channel.emit(DONE)

        assert calls == ["slow", "fast"]

    @pytest.mark.asyncio
    async def test_off(self):
        channel = EventChannel()
        calls = []
        handler = channel.on(DONE, calls.append)

        assert channel.has_handlers(DONE)
        channel.off(DONE, handler)
        channel.off(DONE, handler)
        await channel.emit(DONE, "x")

        assert calls == []
        assert not channel.has_handlers(DONE)

    @pytest.mark.asyncio
    async def test_handler_errors_propagate(self):
        channel = EventChannel()

        def failing(payload):
            raise RuntimeError("boom")

        channel.on(DONE, failing)

        with pytest.raises(RuntimeError, match="boom"):
            await channel.emit(DONE)

    @pytest.mark.asyncio
    async def test_emit_without_handlers(self):
        await EventChannel().emit("unknown", None)
