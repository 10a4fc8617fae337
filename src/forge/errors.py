# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Tuple


@dataclass
class ForgeError(Exception):
    """
    Structured error with enough context for:
      - clean CLI output
      - the final pipeline report
      - debugging without full tracebacks

    Messages and details must never carry secret values.
    """
    kind: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Graph (fatal before any execution)
# ----------------------------------------------------------------------

CYCLIC_DEPENDENCY = "cyclic_dependency"
UNRESOLVED_REFERENCE = "unresolved_reference"
DUPLICATE_NAME = "duplicate_name"


@dataclass
class GraphError(ForgeError):
    cycle: Tuple[str, ...] = ()


# ----------------------------------------------------------------------
# Sandbox provider (fatal to one step)
# ----------------------------------------------------------------------

IMAGE_NOT_FOUND = "image_not_found"
PULL_FAILED = "pull_failed"
SANDBOX_START_FAILED = "sandbox_start_failed"
RUNTIME_CRASHED = "runtime_crashed"

# anything unexpected raised while running a step
INTERNAL_ERROR = "internal_error"


@dataclass
class ProviderError(ForgeError):
    pass


@dataclass
class StepExitError(ForgeError):
    """
    Non-zero exit of the step's own command.

    This is a result value recorded on the StepResult, never raised.
    """
    exit_code: int = 1

    @classmethod
    def for_exit(cls, stage: str, step: str, exit_code: int) -> "StepExitError":
        return cls(
            kind="non_zero_exit",
            message=f"[{stage}] step '{step}' exited with code {exit_code}",
            details={"exit_code": exit_code},
            exit_code=exit_code,
        )


# ----------------------------------------------------------------------
# Secrets / cache / config
# ----------------------------------------------------------------------

MISSING_SECRET = "missing_secret"


@dataclass
class SecretError(ForgeError):
    name: str = ""


RESTORE_FAILED = "restore_failed"
PERSIST_FAILED = "persist_failed"


@dataclass
class CacheError(ForgeError):
    """Cache problems degrade to warnings; the engine never fails a step on them."""
    path: str = ""


@dataclass
class ConfigError(ForgeError):
    pass
