import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

logger = logging.getLogger("scheduler")

T = TypeVar("T")


def partition(items: Sequence[T], size: int) -> List[List[T]]:
    size = max(1, int(size))
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class BatchRotator:
    """Round-robin batch selection: one batch per tick when there is more than one."""

    def __init__(self, batch_size: int = 2):
        self.batch_size = max(1, int(batch_size))
        self.index = 0

    def next_batch(self, items: Sequence[T]) -> List[T]:
        batches = partition(items, self.batch_size)
        if not batches:
            return []
        if len(batches) == 1:
            self.index = 0
            return batches[0]
        position = self.index % len(batches)
        self.index = (position + 1) % len(batches)
        logger.debug("Processing batch %d/%d (%d symbols), next: batch %d", position + 1, len(batches), len(batches[position]), self.index + 1)
        return batches[position]

    def reset(self):
        self.index = 0


class TickScheduler:
    """Runs `tick` every `interval` seconds on the event loop.

    Ticks never overlap: the next one is scheduled only after the running
    tick has finished, so a slow tick stretches the cadence instead of
    piling up work.
    """

    def __init__(self, tick: Callable[[], Awaitable[None]], interval: float = 2.0, name: str = "monitor-tick"):
        self._tick = tick
        self.interval = interval
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    async def _run(self):
        loop = asyncio.get_running_loop()
        while not self._stopping:
            started = loop.time()
            # shielded: on stop the in-flight tick finishes and its caller discards the result
            current = asyncio.ensure_future(self._tick())
            try:
                await asyncio.shield(current)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduler tick failed")
            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, self.interval - elapsed))

    async def stop(self):
        self._stopping = True
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
