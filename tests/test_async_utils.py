import asyncio
import sys

sys.path.insert(0, '.')

from monitoring.async_utils import run_until_stopped


def test_returns_when_stop_event_is_set():
    async def _run():
        stopped = asyncio.Event()
        cleaned = []

        async def forever():
            await asyncio.sleep(3600)

        async def cleanup():
            cleaned.append(True)

        background = asyncio.create_task(forever())
        asyncio.get_running_loop().call_later(0.05, stopped.set)
        await asyncio.wait_for(run_until_stopped(stopped, [background], cleanup=cleanup), 5)
        assert background.cancelled()
        assert cleaned == [True]

    asyncio.run(_run())


def test_returns_when_a_background_task_dies():
    async def _run():
        async def crash():
            raise RuntimeError('tick loop died')

        await asyncio.wait_for(run_until_stopped(asyncio.Event(), [asyncio.create_task(crash())]), 5)

    asyncio.run(_run())
