"""Tentropy Core exceptions."""


class TentropyError(Exception):
    """Base exception for tentropy-core."""

    pass


class ConfigError(TentropyError):
    """Configuration error."""

    pass


class StoreUnavailableError(TentropyError):
    """The shared key-value store could not be reached."""

    pass


class InvalidSubmissionError(TentropyError):
    """Submission payload is missing required fields or is malformed."""

    pass


class NotFoundError(TentropyError):
    """Resource not found."""

    pass


class ChallengeNotFoundError(NotFoundError):
    """Challenge not found."""

    def __init__(self, challenge_id: str) -> None:
        super().__init__(f"Challenge not found: {challenge_id}")
        self.challenge_id = challenge_id


class DuplicateSubmissionError(TentropyError):
    """A submission with the same idempotency key is already in flight."""

    def __init__(self, key: str, existing_status: str | None = None) -> None:
        super().__init__(f"Submission already in progress for key {key}")
        self.key = key
        self.existing_status = existing_status


class SandboxError(TentropyError):
    """Sandbox infrastructure error."""

    pass


class SandboxNotFoundError(SandboxError):
    """Sandbox does not exist or has expired."""

    pass


class SandboxTimeoutError(SandboxError):
    """Sandbox command timed out."""

    pass


class IllegalTransitionError(TentropyError):
    """A submission tried to move between states that are not connected."""

    pass
