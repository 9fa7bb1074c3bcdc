"""Plugin discovery via Python entry points."""

from importlib.metadata import entry_points
from typing import Any

from tentropy_core.protocols import KVStore, SandboxProvider

BACKEND_GROUPS = {
    "kv": "tentropy_core.backends.kv",
    "sandbox": "tentropy_core.backends.sandbox",
}


def discover_backends(group: str) -> dict[str, Any]:
    """Discover all registered backends for a given group.

    Args:
        group: The backend group name (kv, sandbox)

    Returns:
        Dictionary mapping backend names to their classes
    """
    full_group = BACKEND_GROUPS.get(group, group)
    eps = entry_points(group=full_group)
    return {ep.name: ep.load() for ep in eps}


def get_backend(group: str, name: str) -> Any:
    """Get a specific backend class by group and name.

    Raises:
        ValueError: If the backend is not found
    """
    backends = discover_backends(group)
    if name not in backends:
        available = ", ".join(sorted(backends.keys())) or "(none)"
        raise ValueError(
            f"Backend '{name}' not found in group '{group}'. Available: {available}"
        )
    return backends[name]


def create_kv_store(backend: str, **kwargs: Any) -> KVStore:
    """Create a KVStore instance.

    Args:
        backend: The backend name ("memory", "redis")
        **kwargs: Backend-specific configuration
    """
    cls = get_backend("kv", backend)
    return cls(**kwargs)


def create_sandbox_provider(backend: str, **kwargs: Any) -> SandboxProvider:
    """Create a SandboxProvider instance.

    Args:
        backend: The backend name ("e2b", "local")
        **kwargs: Backend-specific configuration
    """
    cls = get_backend("sandbox", backend)
    return cls(**kwargs)
