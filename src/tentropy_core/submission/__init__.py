"""Submission orchestration and stream framing."""

from tentropy_core.submission.models import (
    CallerIdentity,
    OutputChunk,
    SubmissionEvent,
    SubmissionRequest,
    SubmissionResult,
    SubmissionState,
)
from tentropy_core.submission.orchestrator import SubmissionOrchestrator, SubmissionRun
from tentropy_core.submission.streaming import (
    RESULT_DELIMITER,
    DelimitedStreamEncoder,
    NDJSONStreamEncoder,
    StreamDecoder,
    decode_stream,
    encode_events,
    strip_ansi,
)

__all__ = [
    "CallerIdentity",
    "DelimitedStreamEncoder",
    "NDJSONStreamEncoder",
    "OutputChunk",
    "RESULT_DELIMITER",
    "StreamDecoder",
    "SubmissionEvent",
    "SubmissionOrchestrator",
    "SubmissionRequest",
    "SubmissionResult",
    "SubmissionRun",
    "SubmissionState",
    "decode_stream",
    "encode_events",
    "strip_ansi",
]
