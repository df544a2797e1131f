import asyncio
import os
import signal
from unittest.mock import AsyncMock

import pytest

from chain_collector.main import install_signal_handlers


class TestSignals:

    @pytest.mark.asyncio
    async def test_sigterm_runs_shutdown_and_tracks_the_task(self):
        loop = asyncio.get_running_loop()
        release = asyncio.Event()
        calls = []

        async def shutdown():
            calls.append('shutdown')
            await release.wait()

        pending = install_signal_handlers(loop, shutdown)
        try:
            os.kill(os.getpid(), signal.SIGTERM)
            for _ in range(100):
                if calls:
                    break
                await asyncio.sleep(0.01)

            assert calls == ['shutdown']
            assert len(pending) == 1

            release.set()
            await asyncio.gather(*pending)
            await asyncio.sleep(0)
            assert not pending
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

    @pytest.mark.asyncio
    async def test_sigint_is_handled_too(self):
        loop = asyncio.get_running_loop()
        shutdown = AsyncMock()

        pending = install_signal_handlers(loop, shutdown)
        try:
            os.kill(os.getpid(), signal.SIGINT)
            for _ in range(100):
                if shutdown.await_count:
                    break
                await asyncio.sleep(0.01)

            shutdown.assert_awaited_once()
            await asyncio.sleep(0)
            assert not pending
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
