# runner.py
from __future__ import annotations

import queue
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Mapping, Optional, Set

from . import settings
from .cache import CacheManager, CacheStore
from .dag import ExecutionGraph, build_graph
from .errors import INTERNAL_ERROR, ForgeError, GraphError
from .events import EventKind, EventSink, ExecutionEvent, discard
from .executor import StepExecutor
from .logs import LogStore
from .model import PipelineConfig
from .results import (
    NodeState,
    PipelineResult,
    PipelineStatus,
    ResultAggregator,
    StepOutcome,
    StepResult,
)
from .sandbox.base import SandboxProvider
from .secrets import SecretResolver
from .ui.console import get_console

# ----------------------------------------------------------------------
# Coordinator messages (workers -> scheduler)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class _Output:
    event: ExecutionEvent


@dataclass(frozen=True)
class _StepDone:
    stage: str
    step: str
    result: Optional[StepResult]


_WAKE = object()


class Scheduler:
    """
    Drives one run of an ExecutionGraph to completion.

    Steps execute on a thread pool. Workers never touch node state: they
    post messages to the inbox, and the coordinator loop in run() is the
    single writer of every state transition and the only emitter of events.

    Failure policy:
      - a failed step fails its stage; still-pending siblings are skipped,
        running siblings are left to finish
      - a stage that did not succeed skips every stage depending on it
      - independent stages run concurrently (unless concurrent_stages=False)
    """

    def __init__(
        self,
        graph: ExecutionGraph,
        executor: StepExecutor,
        *,
        max_workers: int | None = None,
        concurrent_stages: bool = True,
        on_event: EventSink | None = None,
        run_id: str = "",
    ):
        self.graph = graph
        self.executor = executor
        self.max_workers = max_workers or settings.default_workers()
        self.concurrent_stages = concurrent_stages
        self.on_event = on_event or discard
        self.run_id = run_id
        self.results = ResultAggregator(graph, run_id=run_id)

        # SimpleQueue.put is reentrant: abort() may run in a signal handler
        # that interrupted the coordinator inside get()
        self._inbox: queue.SimpleQueue = queue.SimpleQueue()
        self._abort = threading.Event()
        self._abort_applied = False
        self._pool: Optional[ThreadPoolExecutor] = None

        self._stage_state: Dict[str, NodeState] = {n: NodeState.PENDING for n in graph.stage_order}
        self._step_state: Dict[str, Dict[str, NodeState]] = {
            n: {s.name: NodeState.PENDING for s in graph.stages[n].steps} for n in graph.stage_order
        }
        self._running: Dict[str, Set[str]] = {n: set() for n in graph.stage_order}
        self._failed_stages: Set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def abort(self) -> None:
        """
        Caller-initiated abort: every node that has not started is skipped,
        sandboxes already running are waited for (never killed).
        Safe to call from any thread or a signal handler.
        """
        self._abort.set()
        self._inbox.put(_WAKE)

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def stage_state(self, stage: str) -> NodeState:
        return self._stage_state[stage]

    def step_state(self, stage: str, step: str) -> NodeState:
        return self._step_state[stage][step]

    def run(self) -> PipelineResult:
        console = get_console()
        for i, level in enumerate(self.graph.levels()):
            console.print_debug(f"plan wave {i + 1}: {level}")

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="forge-step") as pool:
            self._pool = pool
            self._advance()
            while self._in_flight():
                msg = self._inbox.get()
                if isinstance(msg, _Output):
                    self._emit(msg.event)
                elif isinstance(msg, _StepDone):
                    self._on_step_done(msg)
                self._advance()
            self._pool = None

        return self.results.finalize(aborted=self._abort.is_set())

    # ------------------------------------------------------------------
    # Coordinator internals (coordinator thread only)
    # ------------------------------------------------------------------

    def _emit(self, event: ExecutionEvent) -> None:
        self.on_event(event)

    def _in_flight(self) -> int:
        return sum(len(r) for r in self._running.values())

    def _advance(self) -> None:
        if self._abort.is_set() and not self._abort_applied:
            self._apply_abort()

        changed = True
        while changed:
            changed = False
            for name in self.graph.stage_order:
                state = self._stage_state[name]
                if state is NodeState.PENDING:
                    changed = self._try_start_stage(name) or changed
                elif state is NodeState.RUNNING:
                    changed = self._pump_stage(name) or changed

    def _apply_abort(self) -> None:
        self._abort_applied = True
        get_console().print_debug("abort requested: skipping every node that has not started")
        for name in self.graph.stage_order:
            if self._stage_state[name] is NodeState.RUNNING:
                self._skip_pending_steps(name, "aborted")

    def _try_start_stage(self, name: str) -> bool:
        deps = self.graph.stage_deps[name]
        for d in sorted(deps):
            if self._stage_state[d] in (NodeState.FAILED, NodeState.SKIPPED):
                self._skip_stage(name, f"dependency '{d}' {self._stage_state[d].value}")
                return True
        if self._abort.is_set():
            self._skip_stage(name, "aborted")
            return True
        if any(self._stage_state[d] is not NodeState.SUCCEEDED for d in deps):
            return False
        if not self.concurrent_stages and any(
            s is NodeState.RUNNING for s in self._stage_state.values()
        ):
            return False

        self._stage_state[name] = NodeState.READY
        self.results.record_stage(name, NodeState.READY)
        self._stage_state[name] = NodeState.RUNNING
        self.results.record_stage(name, NodeState.RUNNING)
        self._emit(ExecutionEvent(kind=EventKind.NODE_STARTED, stage=name, status=NodeState.RUNNING))
        return True

    def _skip_stage(self, name: str, reason: str) -> None:
        self._stage_state[name] = NodeState.SKIPPED
        for step in self.graph.stages[name].steps:
            self._step_state[name][step.name] = NodeState.SKIPPED
            self.results.record_step(StepResult.skipped(name, step.name, reason))
        self.results.record_stage(name, NodeState.SKIPPED, reason)
        self._emit(
            ExecutionEvent(kind=EventKind.NODE_SKIPPED, stage=name, status=NodeState.SKIPPED, message=reason)
        )

    def _skip_pending_steps(self, name: str, reason: str) -> None:
        for step_name in self.graph.step_order[name]:
            if self._step_state[name][step_name] is NodeState.PENDING:
                self._step_state[name][step_name] = NodeState.SKIPPED
                self.results.record_step(StepResult.skipped(name, step_name, reason))
                self._emit(
                    ExecutionEvent(
                        kind=EventKind.NODE_SKIPPED,
                        stage=name,
                        step=step_name,
                        status=NodeState.SKIPPED,
                        message=reason,
                    )
                )

    def _pump_stage(self, name: str) -> bool:
        """Dispatch whatever is ready in a running stage; close it when nothing is left."""
        stage = self.graph.stages[name]
        states = self._step_state[name]
        running = self._running[name]
        changed = False

        if not self._abort.is_set() and name not in self._failed_stages:
            if stage.parallel:
                deps = self.graph.step_deps[name]
                for step_name in self.graph.step_order[name]:
                    if states[step_name] is NodeState.PENDING and all(
                        states[d] is NodeState.SUCCEEDED for d in deps[step_name]
                    ):
                        self._dispatch(name, step_name)
                        changed = True
            elif not running:
                nxt = next((s for s in self.graph.step_order[name] if states[s] is NodeState.PENDING), None)
                if nxt is not None:
                    self._dispatch(name, nxt)
                    changed = True

        if running:
            return changed

        if any(s is NodeState.PENDING for s in states.values()):
            self._skip_pending_steps(name, "aborted" if self._abort.is_set() else "not runnable")

        self._finish_stage(name)
        return True

    def _finish_stage(self, name: str) -> None:
        states = list(self._step_state[name].values())
        reason = None
        if any(s is NodeState.FAILED for s in states):
            final = NodeState.FAILED
        elif all(s is NodeState.SUCCEEDED for s in states):
            final = NodeState.SUCCEEDED
        else:
            final = NodeState.SKIPPED
            reason = "aborted"

        self._stage_state[name] = final
        self.results.record_stage(name, final, reason)
        kind = EventKind.NODE_SKIPPED if final is NodeState.SKIPPED else EventKind.NODE_FINISHED
        self._emit(ExecutionEvent(kind=kind, stage=name, status=final, message=reason or ""))

    def _dispatch(self, stage: str, step: str) -> None:
        self._step_state[stage][step] = NodeState.RUNNING
        self._running[stage].add(step)
        self._emit(ExecutionEvent(kind=EventKind.NODE_STARTED, stage=stage, step=step, status=NodeState.RUNNING))
        self._pool.submit(self._work, stage, step)

    def _on_step_done(self, msg: _StepDone) -> None:
        result = msg.result
        if result is None:
            result = StepResult(
                stage=msg.stage,
                step=msg.step,
                outcome=StepOutcome.EXECUTION_ERROR,
                error=ForgeError(kind=INTERNAL_ERROR, message="step worker exited without a result"),
            )

        self._running[msg.stage].discard(msg.step)
        self._step_state[msg.stage][msg.step] = result.status
        self.results.record_step(result)
        self._emit(
            ExecutionEvent(
                kind=EventKind.NODE_FINISHED,
                stage=msg.stage,
                step=msg.step,
                status=result.status,
                message=str(result.error) if result.error is not None else "",
            )
        )

        if result.status is NodeState.FAILED:
            self._failed_stages.add(msg.stage)
            self._skip_pending_steps(msg.stage, f"step '{msg.step}' failed")

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _work(self, stage_name: str, step_name: str) -> None:
        stage = self.graph.stages[stage_name]
        step = stage.step(step_name)
        result: Optional[StepResult] = None
        try:
            result = self.executor.execute(stage, step, lambda ev: self._inbox.put(_Output(ev)))
        except Exception as e:
            result = StepResult(
                stage=stage_name,
                step=step_name,
                outcome=StepOutcome.EXECUTION_ERROR,
                finished_at=datetime.now(timezone.utc),
                error=ForgeError(kind=INTERNAL_ERROR, message=f"{type(e).__name__}: {e}"),
            )
        finally:
            self._inbox.put(_StepDone(stage_name, step_name, result))


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def new_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-") + uuid.uuid4().hex[:6]


def plan_run(
    config: PipelineConfig,
    provider: SandboxProvider,
    *,
    stage: str | None = None,
    cache_store: CacheStore | None = None,
    cache_root: str | Path = settings.CACHE_DIR,
    log_root: str | Path = settings.LOG_DIR,
    max_workers: int | None = None,
    concurrent_stages: bool = True,
    on_event: EventSink | None = None,
    environ: Mapping[str, str] | None = None,
    run_id: str | None = None,
) -> Scheduler:
    """
    Validate the configuration and wire a Scheduler for it.

    Raises GraphError before anything is created when the configuration
    has a cycle, an unresolved reference or an unknown `stage`.
    """
    graph = build_graph(config)
    if stage is not None:
        graph = graph.scoped(stage)

    run_id = run_id or new_run_id()
    store = cache_store if cache_store is not None else CacheStore(cache_root)
    executor = StepExecutor(
        config=config,
        provider=provider,
        cache=CacheManager(store),
        secrets=SecretResolver(environ),
        logs=LogStore(log_root, run_id=run_id),
    )
    return Scheduler(
        graph,
        executor,
        max_workers=max_workers,
        concurrent_stages=concurrent_stages,
        on_event=on_event,
        run_id=run_id,
    )


def run_pipeline(config: PipelineConfig, provider: SandboxProvider, **kwargs) -> PipelineResult:
    """
    Run a pipeline and return its report.

    An invalid configuration does not raise: it comes back as a result with
    status INVALID and the GraphError attached, distinct from FAILED runs.
    """
    try:
        scheduler = plan_run(config, provider, **kwargs)
    except GraphError as e:
        return PipelineResult(status=PipelineStatus.INVALID, error=e, run_id=kwargs.get("run_id") or "")
    return scheduler.run()
