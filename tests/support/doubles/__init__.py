# Test doubles for pipeline collaborators

from tests.support.doubles.pipeline_doubles import (
    ARTIFACT_BYTES,
    FixedScorer,
    RecordingEventSink,
    ScriptedProvider,
    completed,
    no_sleep,
    running,
)

__all__ = [
    "ARTIFACT_BYTES",
    "FixedScorer",
    "RecordingEventSink",
    "ScriptedProvider",
    "completed",
    "no_sleep",
    "running",
]
