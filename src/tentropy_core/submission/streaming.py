"""Wire framing for submission streams.

Two framings are supported:

text/plain (default)
    Raw output chunks, then ``\\n__JSON_RESULT__:{...}`` as the final
    segment. Program output that happens to contain the delimiter is
    escaped with a zero-width space after the leading ``__`` so the first
    delimiter on the wire is always the real one. Output that already
    carries such spaces gets one more, so decoding restores it exactly.

application/x-ndjson
    One JSON object per line: ``{"type": "output", "data": ...}`` records
    followed by one ``{"type": "result", ...}`` record.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from tentropy_core.submission.models import OutputChunk, SubmissionEvent, SubmissionResult

RESULT_DELIMITER = "__JSON_RESULT__:"
ESCAPE_MARK = "\u200b"
ESCAPED_DELIMITER = RESULT_DELIMITER[:2] + ESCAPE_MARK + RESULT_DELIMITER[2:]

_TOKEN_BODY = RESULT_DELIMITER[2:]
# The delimiter with any number of escape marks after its leading "__"
_ESCAPABLE_PATTERN = re.compile("__(" + ESCAPE_MARK + "*)" + re.escape(_TOKEN_BODY))
_ESCAPED_PATTERN = re.compile("__" + ESCAPE_MARK + "(" + ESCAPE_MARK + "*)" + re.escape(_TOKEN_BODY))


def _prefixes(literal: str) -> str:
    """Regex matching any prefix of literal, including the empty one."""
    pattern = ""
    for char in reversed(literal):
        pattern = f"(?:{re.escape(char)}{pattern})?"
    return pattern


# A trailing fragment that may still grow into an escapable token
_PARTIAL_TOKEN_PATTERN = re.compile(
    "_(?:_" + ESCAPE_MARK + "*" + _prefixes(_TOKEN_BODY[:-1]) + ")?\\Z"
)

TEXT_MEDIA_TYPE = "text/plain; charset=utf-8"
NDJSON_MEDIA_TYPE = "application/x-ndjson"

# Longer runs after a lone ESC are treated as plain text
MAX_ESCAPE_LENGTH = 32

ANSI_ESCAPE_PATTERN = re.compile(
    r"(?:\x1b\][^\x07\x1b]*(?:\x07|\x1b\\))"  # OSC ... BEL/ST
    r"|(?:\x1b\[[0-?]*[ -/]*[@-~])"  # CSI
    r"|(?:\x1b[@-Z\\-_])"  # two-byte sequences
)


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences (colors, cursor movement) from text."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


def escape_output(text: str) -> str:
    """Add one escape mark to every delimiter-like token in program output."""
    return _ESCAPABLE_PATTERN.sub("__" + ESCAPE_MARK + r"\1" + _TOKEN_BODY, text)


def unescape_output(text: str) -> str:
    """Undo escape_output."""
    return _ESCAPED_PATTERN.sub(r"__\1" + _TOKEN_BODY, text)


def _held_token_length(text: str) -> int:
    """Length of the longest suffix of text that could start a token."""
    match = _PARTIAL_TOKEN_PATTERN.search(text)
    return len(text) - match.start() if match else 0


def _incomplete_escape_length(text: str) -> int:
    """Length of a trailing ANSI escape sequence that is not finished yet."""
    index = text.rfind("\x1b")
    if index < 0 or len(text) - index > MAX_ESCAPE_LENGTH:
        return 0
    if ANSI_ESCAPE_PATTERN.match(text, index):
        return 0
    return len(text) - index


class StreamEncoder(Protocol):
    """Serializes submission events for one response."""

    media_type: str

    def encode_output(self, text: str) -> str:
        ...

    def encode_result(self, result: SubmissionResult) -> str:
        ...

    def flush(self) -> str:
        """Return anything still buffered. Called once at end of stream."""
        ...


class DelimitedStreamEncoder:
    """Plain-text framing with an in-band result delimiter.

    Output is passed through as produced, except that a trailing fragment
    which could be the start of the delimiter is held back until the next
    chunk shows whether it completes one.
    """

    media_type = TEXT_MEDIA_TYPE

    def __init__(self) -> None:
        self._pending = ""

    def encode_output(self, text: str) -> str:
        buffer = escape_output(self._pending + text)
        held = _held_token_length(buffer)
        if held:
            self._pending = buffer[-held:]
            return buffer[:-held]
        self._pending = ""
        return buffer

    def encode_result(self, result: SubmissionResult) -> str:
        return self.flush() + "\n" + RESULT_DELIMITER + json.dumps(result.to_dict())

    def flush(self) -> str:
        pending, self._pending = self._pending, ""
        return pending


class NDJSONStreamEncoder:
    """Newline-delimited JSON framing."""

    media_type = NDJSON_MEDIA_TYPE

    def encode_output(self, text: str) -> str:
        return json.dumps({"type": "output", "data": text}) + "\n"

    def encode_result(self, result: SubmissionResult) -> str:
        return json.dumps({"type": "result", **result.to_dict()}) + "\n"

    def flush(self) -> str:
        return ""


def select_encoder(format: str | None = None, accept: str | None = None) -> StreamEncoder:
    """Pick the framing from an explicit format name or an Accept header."""
    if format == "ndjson" or (not format and accept and NDJSON_MEDIA_TYPE in accept):
        return NDJSONStreamEncoder()
    return DelimitedStreamEncoder()


async def encode_events(
    events: AsyncIterator[SubmissionEvent],
    encoder: StreamEncoder,
) -> AsyncIterator[str]:
    """Encode a run's events. Nothing is emitted after the result."""
    async for event in events:
        if isinstance(event, OutputChunk):
            data = encoder.encode_output(event.text)
            if data:
                yield data
        elif isinstance(event, SubmissionResult):
            yield encoder.encode_result(event)
            return
    tail = encoder.flush()
    if tail:
        yield tail


@dataclass
class DecodedStream:
    """A decoded submission stream."""

    output: str
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        """True only for a well-formed result reporting success."""
        return bool(self.result and self.result.get("success") is True)

    @property
    def sandbox_id(self) -> str | None:
        if not self.result:
            return None
        value = self.result.get("sandboxID")
        return value if isinstance(value, str) else None

    @property
    def outcome(self) -> str:
        if self.result is None:
            return "error"
        outcome = self.result.get("outcome")
        if isinstance(outcome, str):
            return outcome
        return "success" if self.success else "failure"


def _parse_result(raw: str) -> tuple[dict[str, Any] | None, str | None]:
    try:
        data = json.loads(raw.strip())
    except json.JSONDecodeError as e:
        return None, f"Malformed result: {e}"
    if not isinstance(data, dict) or not isinstance(data.get("success"), bool):
        return None, "Malformed result: missing success flag"
    return data, None


def decode_stream(body: str) -> DecodedStream:
    """Split a complete text stream into display output and result.

    Everything before the first delimiter is output (ANSI stripped and
    unescaped). A missing or malformed result yields ``result=None``,
    which reads as a failed run.
    """
    output, found, rest = body.partition(RESULT_DELIMITER)
    output = strip_ansi(unescape_output(output))
    if output.endswith("\n") and found:
        output = output[:-1]
    if not found:
        return DecodedStream(output=output, error="Stream ended without a result")
    result, error = _parse_result(rest)
    return DecodedStream(output=output, result=result, error=error)


@dataclass
class StreamDecoder:
    """Incremental decoder for the text framing.

    ``feed`` returns display text that is safe to show now. Text that
    could be the start of the delimiter (or the newline before it) is
    held back until the next chunk. ``finish`` returns the decoded stream.
    """

    _buffer: str = ""
    _output: list[str] = field(default_factory=list)
    _result_raw: str | None = None

    def feed(self, chunk: str) -> str:
        if self._result_raw is not None:
            self._result_raw += chunk
            return ""

        self._buffer += chunk
        index = self._buffer.find(RESULT_DELIMITER)
        if index >= 0:
            ready = self._buffer[:index]
            if ready.endswith("\n"):
                ready = ready[:-1]
            self._result_raw = self._buffer[index + len(RESULT_DELIMITER):]
            self._buffer = ""
        else:
            held = max(
                _held_token_length(self._buffer),
                _incomplete_escape_length(self._buffer),
            )
            cut = len(self._buffer) - held
            # The newline framing the result belongs to the delimiter
            if cut > 0 and self._buffer[cut - 1] == "\n":
                cut -= 1
            ready, self._buffer = self._buffer[:cut], self._buffer[cut:]

        text = strip_ansi(unescape_output(ready))
        self._output.append(text)
        return text

    def finish(self) -> DecodedStream:
        if self._result_raw is None:
            tail = strip_ansi(unescape_output(self._buffer))
            self._output.append(tail)
            self._buffer = ""
            return DecodedStream(output="".join(self._output), error="Stream ended without a result")
        result, error = _parse_result(self._result_raw)
        return DecodedStream(output="".join(self._output), result=result, error=error)
