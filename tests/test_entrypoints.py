"""Tests for stage registration."""

from unittest.mock import MagicMock

from framebrew.entrypoints import register_stages
from framebrew.queue import StageName
from framebrew.workers import DownloadWorker, GenerationWorker, PollingWorker, ScoringWorker


def test_register_stages_registers_all_four(stage_context):
    """[P0] Every stage gets its worker's handle and on_failure.

    GIVEN: A stage queue
    WHEN: Registering the pipeline stages
    THEN: generation, polling, download and scoring are registered with bound handlers
    """
    queue = MagicMock()

    # WHEN: Registering stages
    register_stages(queue, stage_context)

    # THEN: One registration per stage
    registered = {call.args[0]: call.args for call in queue.register.call_args_list}
    assert set(registered) == set(StageName)

    expected = {
        StageName.GENERATION: GenerationWorker,
        StageName.POLLING: PollingWorker,
        StageName.DOWNLOAD: DownloadWorker,
        StageName.SCORING: ScoringWorker,
    }
    for stage, worker_class in expected.items():
        _, handle, on_failure = registered[stage]
        assert isinstance(handle.__self__, worker_class)
        assert on_failure.__self__ is handle.__self__
        assert handle.__self__.ctx is stage_context


def test_stage_context_queue_has_every_stage(stage_context, local_queue):
    assert set(local_queue._stages) == set(StageName)
