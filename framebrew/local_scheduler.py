"""In-process stage scheduler used when no durable broker is configured.

``LocalStageQueue`` runs each stage payload as an asyncio task after a short
start delay (plus any retry backoff). It shares retry accounting, failure
paths and signals with the durable queue through ``StageQueue._execute``, so
a job walks through exactly the same transitions and events.

Differences from the durable queue:
    - Nothing survives a process restart.
    - No concurrency ceiling: every scheduled payload runs as soon as its
      delay elapses.
    - ``cancel`` only removes payloads whose delay has not elapsed yet.

Usage:
    queue = LocalStageQueue(start_delay=0)
    queue.register(StageName.GENERATION, handler, on_failure)
    await queue.enqueue(StageName.GENERATION, payload)
    await queue.drain()  # tests and shutdown
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable

from framebrew.config import get_local_queue_start_delay
from framebrew.queue import StageName, StagePolicy, StageQueue
from framebrew.schemas.payloads import StagePayload
from framebrew.utils.logging import get_logger

log = get_logger(__name__)


class LocalStageQueue(StageQueue):
    """Stage queue backed by deferred asyncio tasks.

    Args:
        policies: Stage policies (defaults to STAGE_POLICIES).
        start_delay: Seconds to wait before a newly scheduled payload runs.
        sleep: Awaitable sleep function, injectable for tests.
    """

    def __init__(
        self,
        policies: dict[StageName, StagePolicy] | None = None,
        start_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(policies)
        self.start_delay = get_local_queue_start_delay() if start_delay is None else start_delay
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()
        # job key -> {task: stage} for tasks still inside their start delay
        self._waiting: dict[str, dict[asyncio.Task, StageName]] = defaultdict(dict)

    @staticmethod
    def _key(payload: StagePayload) -> str:
        return payload.job_id or payload.video_id

    async def _schedule(self, stage: StageName, payload: StagePayload, delay: float) -> None:
        key = self._key(payload)
        task = asyncio.create_task(
            self._run_later(stage, payload, self.start_delay + delay),
            name=f"{stage.value}:{key}:{payload.attempt}",
        )
        self._tasks.add(task)
        self._waiting[key][task] = stage
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda t: self._forget_waiting(key, t))

    async def _run_later(self, stage: StageName, payload: StagePayload, delay: float) -> None:
        if delay > 0:
            await self._sleep(delay)

        current = asyncio.current_task()
        if current is not None:
            self._forget_waiting(self._key(payload), current)

        await self._execute(stage, payload)

    def _forget_waiting(self, key: str, task: asyncio.Task) -> None:
        waiting = self._waiting.get(key)
        if waiting is None:
            return
        waiting.pop(task, None)
        if not waiting:
            del self._waiting[key]

    async def cancel(self, job_id: str) -> int:
        """Cancel payloads for ``job_id`` that have not started running."""
        waiting = self._waiting.pop(job_id, {})
        removed = 0
        for task, stage in waiting.items():
            if not task.done():
                task.cancel()
                self._stats[stage].waiting = max(0, self._stats[stage].waiting - 1)
                removed += 1
        log.info("local_stage_jobs_cancelled", job_id=job_id, removed=removed)
        return removed

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until every scheduled payload, including chained stages, has finished."""

        async def _wait_all() -> None:
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

        await asyncio.wait_for(_wait_all(), timeout=timeout)

    async def stop(self) -> None:
        """Cancel everything still scheduled or running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._waiting.clear()
        log.info("local_scheduler_stopped", cancelled=len(tasks))
