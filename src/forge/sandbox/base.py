# sandbox/base.py
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional


@dataclass(frozen=True)
class Mount:
    """Host directory bind-mounted at `target` inside the sandbox."""
    source: str
    target: str


@dataclass
class SandboxHandle:
    """
    One prepared sandbox.

    `state` is provider-private bookkeeping (process handles, container ids...).
    """
    id: str
    image: str
    state: Dict[str, Any] = field(default_factory=dict)


class ExecutionStream:
    """
    Live output of one sandbox: a lazy, single-pass sequence of byte chunks
    in emission order. Iterating a second time raises RuntimeError.
    """

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = chunks
        self._consumed = False
        self._lock = threading.Lock()

    def __iter__(self) -> Iterator[bytes]:
        with self._lock:
            if self._consumed:
                raise RuntimeError("execution stream already consumed")
            self._consumed = True
        return iter(self._chunks)

    @property
    def consumed(self) -> bool:
        return self._consumed


class SandboxProvider(ABC):
    """
    Contract the scheduler uses to run one step in isolation.

    Lifecycle per step:
        handle = prepare(image)
        stream = run(handle, command, working_dir, env, mounts)
        drain stream
        exit_code = wait(handle)
        dispose(handle)          # exactly once, on every exit path

    A non-zero exit code is a normal result. ProviderError is reserved for
    engine-level failures (image missing, sandbox cannot start, runtime crash).
    """

    name = "abstract"

    @abstractmethod
    def prepare(self, image: str) -> SandboxHandle:
        """Make sure `image` is available locally (pulling it if absent)."""

    @abstractmethod
    def run(
        self,
        handle: SandboxHandle,
        command: str,
        working_dir: Optional[str],
        env: Mapping[str, str],
        mounts: List[Mount],
    ) -> ExecutionStream:
        """Start `command` and return its output stream."""

    @abstractmethod
    def wait(self, handle: SandboxHandle) -> int:
        """Block until the sandbox terminates and return the exit code."""

    @abstractmethod
    def dispose(self, handle: SandboxHandle) -> None:
        """Release every resource held by the sandbox."""
