import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional


logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Wait until every task finishes or one fails, then cancel the rest.

    A task failure is logged with the task name and re-raised after cleanup.
    Cancellation of the caller is treated as a normal shutdown.
    """
    task_list: List[asyncio.Task] = list(tasks)
    failure: Optional[BaseException] = None
    try:
        if task_list:
            done, _ = await asyncio.wait(task_list, return_when=asyncio.FIRST_EXCEPTION)
            for t in done:
                if t.cancelled():
                    continue
                exc = t.exception()
                if exc is not None and failure is None:
                    logger.error("Task %s failed: %r", t.get_name(), exc)
                    failure = exc
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()
    if failure is not None:
        raise failure
