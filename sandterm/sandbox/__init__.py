from .base import SandboxProvider, SandboxHandle, PtyHandle, PtySize, ExecutionResult
from .local import LocalProvider
from .e2b import E2BProvider

__all__ = [
    "SandboxProvider",
    "SandboxHandle",
    "PtyHandle",
    "PtySize",
    "ExecutionResult",
    "LocalProvider",
    "E2BProvider",
]
