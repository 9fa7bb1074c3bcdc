"""Sandbox acquisition and leasing."""

from tentropy_core.sandbox.broker import SandboxBroker, SandboxLease

__all__ = ["SandboxBroker", "SandboxLease"]
