# results.py
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .dag import ExecutionGraph, step_id
from .errors import ForgeError


class NodeState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (NodeState.SUCCEEDED, NodeState.FAILED, NodeState.SKIPPED)


class StepOutcome(str, Enum):
    SUCCESS = "success"
    NON_ZERO_EXIT = "non_zero_exit"
    EXECUTION_ERROR = "execution_error"
    SKIPPED = "skipped"

    @property
    def state(self) -> NodeState:
        if self is StepOutcome.SUCCESS:
            return NodeState.SUCCEEDED
        if self is StepOutcome.SKIPPED:
            return NodeState.SKIPPED
        return NodeState.FAILED


class PipelineStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INVALID = "invalid"  # configuration rejected, nothing ran


@dataclass(frozen=True)
class LogRef:
    """Opaque handle on a step's captured (already redacted) output."""
    path: str

    def read_bytes(self) -> bytes:
        p = Path(self.path)
        return p.read_bytes() if p.exists() else b""

    def read_text(self) -> str:
        return self.read_bytes().decode("utf-8", errors="replace")


@dataclass(frozen=True)
class StepResult:
    stage: str
    step: str
    outcome: StepOutcome
    exit_code: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    log: Optional[LogRef] = None
    error: Optional[ForgeError] = None
    warnings: Tuple[str, ...] = ()
    skip_reason: Optional[str] = None

    @property
    def node(self) -> str:
        return step_id(self.stage, self.step)

    @property
    def status(self) -> NodeState:
        return self.outcome.state

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @classmethod
    def skipped(cls, stage: str, step: str, reason: str) -> "StepResult":
        return cls(stage=stage, step=step, outcome=StepOutcome.SKIPPED, skip_reason=reason)


@dataclass(frozen=True)
class StageResult:
    stage: str
    status: NodeState
    steps: Tuple[StepResult, ...] = ()
    skip_reason: Optional[str] = None

    def step(self, name: str) -> StepResult:
        for s in self.steps:
            if s.step == name:
                return s
        raise KeyError(f"no result for step '{name}' in stage '{self.stage}'")


@dataclass(frozen=True)
class PipelineResult:
    status: PipelineStatus
    stages: Tuple[StageResult, ...] = ()
    error: Optional[ForgeError] = None
    aborted: bool = False
    run_id: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status is PipelineStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        if self.aborted:
            return 130
        if self.status is PipelineStatus.SUCCEEDED:
            return 0
        if self.status is PipelineStatus.INVALID:
            return 2
        return 1

    def stage(self, name: str) -> StageResult:
        for s in self.stages:
            if s.stage == name:
                return s
        raise KeyError(f"no result for stage '{name}'")

    def failed_steps(self) -> List[StepResult]:
        return [s for st in self.stages for s in st.steps if s.status is NodeState.FAILED]

    def skipped_nodes(self) -> List[str]:
        out: List[str] = []
        for st in self.stages:
            if st.status is NodeState.SKIPPED:
                out.append(st.stage)
                continue
            out.extend(s.node for s in st.steps if s.status is NodeState.SKIPPED)
        return out


class ResultAggregator:
    """
    Folds StepResults into StageResults and those into the PipelineResult.

    Results are keyed by identity, so arrival order does not matter; the
    report follows graph order (stages) and declaration order (steps).
    Safe to query from any thread while a run is in progress.
    """

    def __init__(self, graph: ExecutionGraph, run_id: str = ""):
        self.graph = graph
        self.run_id = run_id
        self._lock = threading.Lock()
        self._steps: Dict[str, Dict[str, StepResult]] = {name: {} for name in graph.stage_order}
        self._stages: Dict[str, NodeState] = {}
        self._skip_reasons: Dict[str, str] = {}
        self._first_error: Optional[ForgeError] = None

    def record_step(self, result: StepResult) -> None:
        with self._lock:
            self._steps[result.stage][result.step] = result
            if result.error is not None and self._first_error is None:
                self._first_error = result.error

    def record_stage(self, stage: str, status: NodeState, reason: Optional[str] = None) -> None:
        with self._lock:
            self._stages[stage] = status
            if reason:
                self._skip_reasons[stage] = reason

    def _stage_result(self, stage: str) -> StageResult:
        recorded = self._steps[stage]
        ordered = tuple(
            recorded[s.name] for s in self.graph.stages[stage].steps if s.name in recorded
        )
        return StageResult(
            stage=stage,
            status=self._stages.get(stage, NodeState.PENDING),
            steps=ordered,
            skip_reason=self._skip_reasons.get(stage),
        )

    def snapshot(self) -> List[StageResult]:
        """Partial progress: every stage with the step results recorded so far."""
        with self._lock:
            return [self._stage_result(name) for name in self.graph.stage_order]

    def finalize(self, *, aborted: bool = False) -> PipelineResult:
        with self._lock:
            stages = tuple(self._stage_result(name) for name in self.graph.stage_order)
            ok = all(s.status is NodeState.SUCCEEDED for s in stages)
            return PipelineResult(
                status=PipelineStatus.SUCCEEDED if ok else PipelineStatus.FAILED,
                stages=stages,
                error=self._first_error,
                aborted=aborted and not ok,
                run_id=self.run_id,
            )
