"""Stage registration for the generation pipeline.

Wires each stage worker's ``handle`` and ``on_failure`` into a stage queue.
The same registration serves both queue implementations:

    - LocalStageQueue: handlers run as in-process asyncio tasks.
    - PgQueuerStageQueue: call ``queue.bind(pgq)`` afterwards to expose each
      registered stage as a PgQueuer entrypoint (worker process only).

The API process registers stages too, because ``StageQueue.enqueue`` refuses
payloads for stages without a handler.
"""

from framebrew.queue import StageName, StageQueue
from framebrew.utils.logging import get_logger
from framebrew.workers import (
    DownloadWorker,
    GenerationWorker,
    PollingWorker,
    ScoringWorker,
    StageContext,
)

log = get_logger(__name__)


def register_stages(queue: StageQueue, ctx: StageContext) -> None:
    """Register the four pipeline stages on ``queue``.

    Args:
        queue: Stage queue to register on.
        ctx: Shared stage dependencies.
    """
    workers = {
        StageName.GENERATION: GenerationWorker(ctx),
        StageName.POLLING: PollingWorker(ctx),
        StageName.DOWNLOAD: DownloadWorker(ctx),
        StageName.SCORING: ScoringWorker(ctx),
    }
    for stage, worker in workers.items():
        queue.register(stage, worker.handle, worker.on_failure)

    log.info("pipeline_stages_registered", stages=[stage.value for stage in workers])
