from concurrent.futures import ThreadPoolExecutor
from typing import Callable, TypeVar
import asyncio

T = TypeVar('T')


async def run_blocking(func: Callable[[], T], timeout: float) -> T:
    """
    Run a blocking SDK call in its own worker thread and give up after timeout seconds.

    The worker is never joined, so a hung call cannot hold up asyncio.run()
    after the timeout fires. Raises asyncio.TimeoutError on timeout.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(loop.run_in_executor(executor, func), timeout=timeout)
    finally:
        executor.shutdown(wait=False)
