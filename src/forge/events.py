# events.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from .dag import step_id
from .results import NodeState


class EventKind(str, Enum):
    NODE_STARTED = "node_started"
    NODE_FINISHED = "node_finished"
    NODE_SKIPPED = "node_skipped"
    STEP_OUTPUT = "step_output"
    WARNING = "warning"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExecutionEvent:
    """
    One structured execution event, for presentation layers.

    `step` is None for stage-level events. `data` carries redacted output
    bytes for STEP_OUTPUT; `message` carries skip reasons and warnings.
    """
    kind: EventKind
    stage: str
    step: Optional[str] = None
    status: Optional[NodeState] = None
    message: str = ""
    data: bytes = b""
    at: datetime = field(default_factory=_now)

    @property
    def node(self) -> str:
        return self.stage if self.step is None else step_id(self.stage, self.step)

    @property
    def is_step(self) -> bool:
        return self.step is not None


EventSink = Callable[[ExecutionEvent], None]


def discard(event: ExecutionEvent) -> None:
    """Default sink."""
    return None
