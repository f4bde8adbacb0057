"""
Run blocking SDK calls without tying up the event loop.

Each call runs on its own daemon thread and reports back through a future on
the calling loop. A caller that gives up (asyncio.wait_for cancelling the
await) simply stops waiting: the thread is never joined, so neither
asyncio.run's executor shutdown nor interpreter exit waits for a hung call.
"""

import asyncio
import logging
import threading

logger = logging.getLogger(__name__)


def _deliver(future: asyncio.Future, result=None, error: BaseException | None = None):
    if future.cancelled():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


async def run_blocking(func, *args, **kwargs):
    """Await func(*args, **kwargs) running on a daemon thread."""
    loop = asyncio.get_running_loop()
    future = loop.create_future()
    name = getattr(func, "__qualname__", None) or repr(func)

    def _worker():
        try:
            result = func(*args, **kwargs)
        except BaseException as e:
            outcome = {"error": e}
        else:
            outcome = {"result": result}
        try:
            loop.call_soon_threadsafe(lambda: _deliver(future, **outcome))
        except RuntimeError:
            # The loop closed while the call was still running
            logger.debug(f"Discarding late result of {name}")

    threading.Thread(target=_worker, name=f"blocking-{name}", daemon=True).start()
    return await future
