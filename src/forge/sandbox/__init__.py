from .base import ExecutionStream, Mount, SandboxHandle, SandboxProvider
from .docker import DockerSandboxProvider

__all__ = [
    "ExecutionStream",
    "Mount",
    "SandboxHandle",
    "SandboxProvider",
    "DockerSandboxProvider",
]
