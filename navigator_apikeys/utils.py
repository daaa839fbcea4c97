"""Background helpers shared by the key lifecycle components."""
import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger("navigator.apikeys")


async def maybe_await(result: Any) -> Any:
    """Await ``result`` if it is awaitable, return it unchanged otherwise."""
    if inspect.isawaitable(result):
        return await result
    return result


class PeriodicTask:
    """Run a sync or async callable every ``interval`` seconds on an asyncio task.

    Errors raised by the callable are logged and the loop keeps running.
    ``stop()`` cancels the task and waits for it, so no tick runs afterwards.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Any]):
        self.name = name
        self.interval = interval
        self._func = func
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"navigator.apikeys.{self.name}"
        )
        logger.debug("Started periodic task %s (every %.1fs)", self.name, self.interval)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await maybe_await(self._func())
            except asyncio.CancelledError:
                raise
            except Exception as err:
                logger.exception("Periodic task %s failed: %s", self.name, err)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Stopped periodic task %s", self.name)
