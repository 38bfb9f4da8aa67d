"""
BackgroundDispatcher: fire-and-forget tasks that log instead of raising.
"""

import asyncio
import logging

import pytest


class TestBackgroundDispatcher:

    @pytest.mark.asyncio
    async def test_submit_runs_without_caller_awaiting(self):
        from rxportal.services.background import BackgroundDispatcher

        dispatcher = BackgroundDispatcher()
        ran = asyncio.Event()

        async def job(flag):
            flag.set()

        dispatcher.submit("job", job, ran)
        assert dispatcher.pending == 1
        await asyncio.wait_for(ran.wait(), timeout=1)
        await dispatcher.drain(timeout=1)
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, caplog):
        from rxportal.services.background import BackgroundDispatcher

        dispatcher = BackgroundDispatcher()

        async def broken():
            raise RuntimeError("smtp down")

        with caplog.at_level(logging.ERROR, logger="rxportal.services.background"):
            task = dispatcher.submit("refill.notify_pharmacy:abc", broken)
            await task

        assert task.exception() is None
        assert "refill.notify_pharmacy:abc failed" in caplog.text
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_drain_cancels_stragglers(self):
        from rxportal.services.background import BackgroundDispatcher

        dispatcher = BackgroundDispatcher()

        async def slow():
            await asyncio.sleep(10)

        task = dispatcher.submit("slow", slow)
        await dispatcher.drain(timeout=0.01)
        await asyncio.sleep(0)

        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_drain_with_nothing_pending(self):
        from rxportal.services.background import BackgroundDispatcher

        await BackgroundDispatcher().drain(timeout=0.01)
