# sandbox/docker.py
from __future__ import annotations

import os
import subprocess
import uuid
from typing import Iterator, List, Mapping, Optional

from .. import settings
from ..errors import (
    IMAGE_NOT_FOUND,
    PULL_FAILED,
    RUNTIME_CRASHED,
    SANDBOX_START_FAILED,
    ProviderError,
)
from .base import ExecutionStream, Mount, SandboxHandle, SandboxProvider

DOCKER_HINT = "Install Docker and ensure the daemon is running."

# `docker run` itself failed (bad flags, daemon refused to create the container)
DOCKER_RUN_FAILED = 125

_NOT_FOUND_MARKERS = (
    "not found",
    "manifest unknown",
    "pull access denied",
    "repository does not exist",
)

READ_SIZE = 64 * 1024


class DockerSandboxProvider(SandboxProvider):
    """
    Sandbox provider backed by the docker CLI.

    One container per step, named forge-<hex>. Env values are handed to the
    docker client through its own process environment and referenced by name
    (`-e NAME`), so they never show up on a command line.
    """

    name = "docker"

    def __init__(self, docker_bin: str | None = None):
        self.docker_bin = docker_bin or settings.DOCKER_BIN

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _docker(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.docker_bin, *args],
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            raise ProviderError(
                kind=SANDBOX_START_FAILED,
                message="Docker is not available",
                details={"hint": DOCKER_HINT},
            )

    def ping(self) -> None:
        """Check the docker daemon answers, raise ProviderError if not."""
        proc = self._docker("version", "--format", "{{.Server.Version}}")
        if proc.returncode != 0:
            raise ProviderError(
                kind=SANDBOX_START_FAILED,
                message="Docker daemon is not reachable",
                details={"stderr": proc.stderr.strip()[-500:], "hint": DOCKER_HINT},
            )

    def _build_run_command(
        self,
        handle: SandboxHandle,
        command: str,
        working_dir: Optional[str],
        env: Mapping[str, str],
        mounts: List[Mount],
    ) -> List[str]:
        # --sig-proxy=false: a Ctrl-C aimed at forge must not reach running steps
        cmd = [self.docker_bin, "run", "--sig-proxy=false", "--name", handle.id]

        for m in mounts:
            cmd.extend(["-v", f"{m.source}:{m.target}"])

        if working_dir:
            cmd.extend(["-w", working_dir])

        for key in sorted(env):
            cmd.extend(["-e", key])

        cmd.append(handle.image)
        cmd.extend(["/bin/sh", "-c", command])
        return cmd

    # ------------------------------------------------------------------
    # SandboxProvider
    # ------------------------------------------------------------------

    def prepare(self, image: str) -> SandboxHandle:
        inspect = self._docker("image", "inspect", image)
        if inspect.returncode != 0:
            pull = self._docker("pull", image)
            if pull.returncode != 0:
                err = (pull.stderr or "").strip()
                kind = PULL_FAILED
                if any(m in err.lower() for m in _NOT_FOUND_MARKERS):
                    kind = IMAGE_NOT_FOUND
                raise ProviderError(
                    kind=kind,
                    message=f"Failed to pull image: {image}",
                    details={"image": image, "stderr": err[-500:]},
                )

        return SandboxHandle(id=f"forge-{uuid.uuid4().hex[:12]}", image=image)

    def run(
        self,
        handle: SandboxHandle,
        command: str,
        working_dir: Optional[str],
        env: Mapping[str, str],
        mounts: List[Mount],
    ) -> ExecutionStream:
        client_env = os.environ.copy()
        client_env.update(env)

        cmd = self._build_run_command(handle, command, working_dir, env, mounts)
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                env=client_env,
                start_new_session=True,
            )
        except OSError as e:
            raise ProviderError(
                kind=SANDBOX_START_FAILED,
                message=f"Could not start container for image {handle.image}",
                details={"error": e.strerror or type(e).__name__, "hint": DOCKER_HINT},
            )

        handle.state["proc"] = proc
        return ExecutionStream(self._read_output(proc))

    @staticmethod
    def _read_output(proc: subprocess.Popen) -> Iterator[bytes]:
        try:
            while True:
                chunk = proc.stdout.read1(READ_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            proc.stdout.close()

    def wait(self, handle: SandboxHandle) -> int:
        proc = handle.state.get("proc")
        if proc is None:
            raise ProviderError(
                kind=SANDBOX_START_FAILED,
                message=f"Sandbox {handle.id} was never started",
            )

        code = proc.wait()
        if code == DOCKER_RUN_FAILED:
            raise ProviderError(
                kind=SANDBOX_START_FAILED,
                message=f"docker could not run container {handle.id}",
                details={"image": handle.image, "exit_code": code},
            )
        if code < 0:
            # docker client killed by a signal; the container state is unknown
            raise ProviderError(
                kind=RUNTIME_CRASHED,
                message=f"docker client for {handle.id} died with signal {-code}",
                details={"image": handle.image},
            )
        return code

    def dispose(self, handle: SandboxHandle) -> None:
        if handle.state.get("disposed"):
            return
        handle.state["disposed"] = True

        proc = handle.state.get("proc")
        if proc is not None and proc.poll() is None:
            proc.kill()
            proc.wait()
        if proc is not None:
            # container only exists once `docker run` was launched
            self._docker("rm", "-f", handle.id)
