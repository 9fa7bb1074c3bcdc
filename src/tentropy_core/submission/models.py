"""Submission data types and the run state machine."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from tentropy_core.exceptions import IllegalTransitionError, InvalidSubmissionError


class SubmissionState(str, Enum):
    """Lifecycle of one submission run."""

    ADMITTED = "admitted"
    SANDBOX_READY = "sandbox_ready"
    FILES_STAGED = "files_staged"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def outcome(self) -> str:
        """Short outcome name used on the wire and in metrics."""
        return _OUTCOMES.get(self, self.value)


TERMINAL_STATES = frozenset(
    {
        SubmissionState.SUCCEEDED,
        SubmissionState.FAILED,
        SubmissionState.ERRORED,
        SubmissionState.CANCELLED,
    }
)

_OUTCOMES = {
    SubmissionState.SUCCEEDED: "success",
    SubmissionState.FAILED: "failure",
    SubmissionState.ERRORED: "error",
    SubmissionState.CANCELLED: "cancelled",
}

# Every non-terminal state may fail, error or be cancelled; only RUNNING
# may succeed. Terminal states have no exits.
_ABORT = {SubmissionState.FAILED, SubmissionState.ERRORED, SubmissionState.CANCELLED}

TRANSITIONS: dict[SubmissionState, frozenset[SubmissionState]] = {
    SubmissionState.ADMITTED: frozenset({SubmissionState.SANDBOX_READY} | _ABORT),
    SubmissionState.SANDBOX_READY: frozenset({SubmissionState.FILES_STAGED} | _ABORT),
    SubmissionState.FILES_STAGED: frozenset({SubmissionState.RUNNING} | _ABORT),
    SubmissionState.RUNNING: frozenset({SubmissionState.SUCCEEDED} | _ABORT),
    SubmissionState.SUCCEEDED: frozenset(),
    SubmissionState.FAILED: frozenset(),
    SubmissionState.ERRORED: frozenset(),
    SubmissionState.CANCELLED: frozenset(),
}


def check_transition(current: SubmissionState, target: SubmissionState) -> None:
    """Raise IllegalTransitionError unless ``current -> target`` is allowed."""
    if target not in TRANSITIONS[current]:
        raise IllegalTransitionError(f"Illegal transition {current.value} -> {target.value}")


@dataclass(frozen=True)
class CallerIdentity:
    """Who is submitting: an authenticated user, else a network address."""

    user_id: str | None = None
    address: str = "127.0.0.1"

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def rate_limit_key(self) -> str:
        """Bucket key; users and anonymous addresses never share a bucket."""
        if self.user_id is not None:
            return f"user:{self.user_id}"
        return f"anon:{self.address}"

    def scope(self, key: str) -> str:
        """Scope a client-supplied key to this caller."""
        return f"{self.rate_limit_key}:{key}"


@dataclass
class SubmissionRequest:
    """A validated submission."""

    code: str
    challenge_id: str
    identity: CallerIdentity = field(default_factory=CallerIdentity)
    sandbox_id: str | None = None
    idempotency_key: str | None = None

    @property
    def scoped_key(self) -> str | None:
        if not self.idempotency_key:
            return None
        return self.identity.scope(self.idempotency_key)

    @classmethod
    def from_payload(
        cls,
        payload: Any,
        identity: CallerIdentity,
        max_code_bytes: int | None = None,
        max_key_length: int | None = None,
    ) -> "SubmissionRequest":
        """Validate a decoded JSON body.

        Expects ``code`` and ``challengeId``, and optionally ``sandboxID``
        and ``idempotencyKey``.

        Raises:
            InvalidSubmissionError: If a field is missing or malformed
        """
        if not isinstance(payload, dict):
            raise InvalidSubmissionError("Request body must be a JSON object")

        code = payload.get("code")
        challenge_id = payload.get("challengeId")
        if not isinstance(code, str) or not code:
            raise InvalidSubmissionError("Missing code or challengeId")
        if not isinstance(challenge_id, str) or not challenge_id:
            raise InvalidSubmissionError("Missing code or challengeId")
        if max_code_bytes is not None and len(code.encode("utf-8")) > max_code_bytes:
            raise InvalidSubmissionError(f"Code exceeds {max_code_bytes} bytes")

        sandbox_id = _optional_str(payload, "sandboxID")
        idempotency_key = _optional_str(payload, "idempotencyKey")
        if idempotency_key and max_key_length is not None and len(idempotency_key) > max_key_length:
            raise InvalidSubmissionError(f"idempotencyKey exceeds {max_key_length} characters")

        return cls(
            code=code,
            challenge_id=challenge_id,
            identity=identity,
            sandbox_id=sandbox_id or None,
            idempotency_key=idempotency_key or None,
        )


def _optional_str(payload: dict[str, Any], name: str) -> str | None:
    value = payload.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidSubmissionError(f"{name} must be a string")
    return value


@dataclass(frozen=True)
class OutputChunk:
    """Display text produced during a run, in production order."""

    text: str


@dataclass(frozen=True)
class SubmissionResult:
    """The single terminal record of a run."""

    success: bool
    sandbox_id: str
    outcome: str

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "sandboxID": self.sandbox_id, "outcome": self.outcome}


SubmissionEvent = Union[OutputChunk, SubmissionResult]
