# tests/conftest.py
"""
Shared fixtures: a scripted in-memory sandbox provider and a `run` helper
wiring run_pipeline to temp cache/log directories.
"""
from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

import pytest

from forge.errors import IMAGE_NOT_FOUND, ProviderError
from forge.runner import plan_run, run_pipeline
from forge.sandbox.base import ExecutionStream, Mount, SandboxHandle, SandboxProvider


@dataclass
class FakeSandbox:
    """What a scripted behavior sees: the step's inputs plus an output buffer."""
    command: str
    working_dir: Optional[str]
    env: Dict[str, str]
    mounts: Dict[str, Path]  # target -> host dir
    output: List[bytes] = field(default_factory=list)

    def write(self, text: str | bytes) -> None:
        self.output.append(text.encode() if isinstance(text, str) else text)


Behavior = Callable[[FakeSandbox], int]


def _default_behavior(sb: FakeSandbox) -> int:
    cmd = sb.command.strip()
    if cmd.startswith("exit "):
        return int(cmd.split()[1])
    if cmd.startswith("echo "):
        sb.write(cmd[len("echo "):] + "\n")
    return 0


class FakeSandboxProvider(SandboxProvider):
    """
    Thread-safe scripted provider.

    behaviors: command -> fn(FakeSandbox) -> exit code, run synchronously
    inside run() on the step's worker thread (so it may block).
    Unknown commands: `exit N` exits N, `echo X` prints X, anything else exits 0.
    """

    name = "fake"

    def __init__(self, behaviors: Optional[Mapping[str, Behavior]] = None, missing_images=()):
        self.behaviors = dict(behaviors or {})
        self.missing_images = set(missing_images)
        self.calls: List[tuple] = []
        self.timeline: List[tuple] = []  # ("start"|"end", command)
        self.sandboxes: Dict[str, FakeSandbox] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def calls_of(self, kind: str) -> List[tuple]:
        with self._lock:
            return [c for c in self.calls if c[0] == kind]

    def started(self) -> List[str]:
        return [cmd for kind, cmd in self.timeline if kind == "start"]

    def index(self, kind: str, command: str) -> int:
        return self.timeline.index((kind, command))

    def wait_for(self, kind: str, command: str, timeout: float = 5.0) -> bool:
        """Block until (kind, command) shows up in the timeline."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                if (kind, command) in self.timeline:
                    return True
            time.sleep(0.005)
        return False

    def prepare(self, image: str) -> SandboxHandle:
        self._record("prepare", image)
        if image in self.missing_images:
            raise ProviderError(kind=IMAGE_NOT_FOUND, message=f"Failed to pull image: {image}")
        return SandboxHandle(id=f"fake-{next(self._ids)}", image=image)

    def run(self, handle, command, working_dir, env, mounts: List[Mount]) -> ExecutionStream:
        self._record("run", handle.id, command)
        with self._lock:
            self.timeline.append(("start", command))
        sb = FakeSandbox(
            command=command,
            working_dir=working_dir,
            env=dict(env),
            mounts={m.target: Path(m.source) for m in mounts},
        )
        self.sandboxes[handle.id] = sb
        behavior = self.behaviors.get(command, _default_behavior)
        handle.state["exit_code"] = behavior(sb)
        return ExecutionStream(iter(list(sb.output)))

    def wait(self, handle: SandboxHandle) -> int:
        self._record("wait", handle.id)
        with self._lock:
            self.timeline.append(("end", self.sandboxes[handle.id].command))
        return handle.state["exit_code"]

    def dispose(self, handle: SandboxHandle) -> None:
        self._record("dispose", handle.id)


@pytest.fixture
def provider() -> FakeSandboxProvider:
    return FakeSandboxProvider()


@pytest.fixture
def run_config(tmp_path, provider):
    """run_config(config, **kwargs) -> PipelineResult, using temp cache/log dirs."""

    def _run(config, provider=provider, **kwargs):
        kwargs.setdefault("cache_root", tmp_path / "cache")
        kwargs.setdefault("log_root", tmp_path / "logs")
        kwargs.setdefault("max_workers", 8)
        kwargs.setdefault("environ", {})
        return run_pipeline(config, provider, **kwargs)

    return _run


@pytest.fixture
def make_scheduler(tmp_path, provider):
    def _make(config, provider=provider, **kwargs):
        kwargs.setdefault("cache_root", tmp_path / "cache")
        kwargs.setdefault("log_root", tmp_path / "logs")
        kwargs.setdefault("max_workers", 8)
        kwargs.setdefault("environ", {})
        return plan_run(config, provider, **kwargs)

    return _make
