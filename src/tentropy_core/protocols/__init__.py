"""Protocol interfaces for pluggable backends."""

from tentropy_core.protocols.kv_store import KVStore
from tentropy_core.protocols.sandbox import (
    CommandResult,
    OutputCallback,
    SandboxProvider,
    SandboxSession,
)

__all__ = [
    "CommandResult",
    "KVStore",
    "OutputCallback",
    "SandboxProvider",
    "SandboxSession",
]
