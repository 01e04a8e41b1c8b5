import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional


async def run_until_stopped(
    stopped: asyncio.Event,
    tasks: Iterable[asyncio.Task] = (),
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Block until ``stopped`` is set or any background task finishes.

    Remaining tasks are cancelled and awaited before ``cleanup`` runs.
    """
    waiter = asyncio.ensure_future(stopped.wait())
    task_list: List[asyncio.Future] = [waiter, *tasks]
    try:
        await asyncio.wait(task_list, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()
