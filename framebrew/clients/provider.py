"""Generation provider contract and the simulated provider.

Stages talk to the render backend only through ``GenerationProvider``:

    start_generation(params) -> operation handle
    poll_operation(handle)   -> OperationStatus(state, artifact?, error?, progress?)
    download_artifact(ref)   -> bytes

``VeoClient`` (framebrew.clients.veo) is the production implementation.
``SimulatedProvider`` completes every render after a fixed number of polls and
is used for local development when GEMINI_API_KEY is not set.
"""

import enum
import itertools
from collections import OrderedDict
from dataclasses import dataclass
from typing import Protocol

from framebrew.schemas.generation import GenerationParams
from framebrew.schemas.payloads import ArtifactRef, ProviderHandle
from framebrew.utils.logging import get_logger

log = get_logger(__name__)

# Finished handles remembered so a repeated poll still reports COMPLETED
DEFAULT_KEEP_FINISHED = 1024


class OperationState(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class OperationStatus:
    """Provider's view of one render operation.

    Attributes:
        state: RUNNING, COMPLETED or FAILED.
        artifact: Reference to the produced video (COMPLETED only).
        error: Provider's failure message (FAILED only).
        progress: Provider-reported percentage, if any.
    """

    state: OperationState
    artifact: ArtifactRef | None = None
    error: str | None = None
    progress: int | None = None


class GenerationProvider(Protocol):
    async def start_generation(self, params: GenerationParams) -> str: ...

    async def poll_operation(self, handle: str) -> OperationStatus: ...

    async def download_artifact(self, ref: ProviderHandle) -> bytes: ...

    async def close(self) -> None: ...


class SimulatedProvider:
    """Provider stand-in that finishes each render after ``polls_to_complete`` polls.

    Example:
        >>> provider = SimulatedProvider(polls_to_complete=2)
        >>> handle = await provider.start_generation(params)
        >>> (await provider.poll_operation(handle)).state
        <OperationState.RUNNING: 'running'>
    """

    def __init__(
        self,
        polls_to_complete: int = 3,
        artifact_bytes: bytes = b"\x00\x00\x00\x18ftypmp42",
        keep_finished: int = DEFAULT_KEEP_FINISHED,
    ):
        self.polls_to_complete = polls_to_complete
        self.artifact_bytes = artifact_bytes
        self.keep_finished = keep_finished
        self._counter = itertools.count(1)
        # In-flight handle → polls so far
        self._polls: dict[str, int] = {}
        self._finished: OrderedDict[str, None] = OrderedDict()

    async def start_generation(self, params: GenerationParams) -> str:
        handle = f"sim-op-{next(self._counter)}"
        self._polls[handle] = 0
        log.info("simulated_generation_started", operation_handle=handle, model=params.model)
        return handle

    async def poll_operation(self, handle: str) -> OperationStatus:
        if handle in self._finished:
            return self._completed(handle)
        if handle not in self._polls:
            return OperationStatus(state=OperationState.FAILED, error=f"Unknown operation: {handle}")

        self._polls[handle] += 1
        polls = self._polls[handle]
        if polls >= self.polls_to_complete:
            del self._polls[handle]
            self._finished[handle] = None
            while len(self._finished) > self.keep_finished:
                self._finished.popitem(last=False)
            return self._completed(handle)
        return OperationStatus(
            state=OperationState.RUNNING,
            progress=int(polls / self.polls_to_complete * 100),
        )

    @staticmethod
    def _completed(handle: str) -> OperationStatus:
        return OperationStatus(
            state=OperationState.COMPLETED,
            artifact=ProviderHandle(handle=f"{handle}/video.mp4"),
            progress=100,
        )

    async def download_artifact(self, ref: ProviderHandle) -> bytes:
        return self.artifact_bytes

    async def close(self) -> None:
        self._polls.clear()
        self._finished.clear()
