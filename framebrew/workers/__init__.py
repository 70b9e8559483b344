"""Stage workers for the generation pipeline.

Each worker exposes ``handle(payload)`` and ``on_failure(payload, error)``
and is registered with a stage queue by ``framebrew.entrypoints``.
"""

from framebrew.workers.context import StageContext
from framebrew.workers.download_worker import DownloadWorker
from framebrew.workers.generation_worker import GenerationWorker
from framebrew.workers.polling_worker import PollingWorker
from framebrew.workers.scoring_worker import ScoringWorker

__all__ = [
    "DownloadWorker",
    "GenerationWorker",
    "PollingWorker",
    "ScoringWorker",
    "StageContext",
]
