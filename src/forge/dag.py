# dag.py
from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Sequence, Set, Tuple

from .errors import CYCLIC_DEPENDENCY, DUPLICATE_NAME, UNRESOLVED_REFERENCE, GraphError
from .model import PipelineConfig, Stage

# DFS marks
_WHITE, _GREY, _BLACK = 0, 1, 2


def step_id(stage: str, step: str) -> str:
    """Pipeline-wide identity of a step node."""
    return f"{stage}/{step}"


@dataclass(frozen=True)
class ExecutionGraph:
    """
    Validated DAG of stages and the steps nested under them.

    stage_deps / stage_dependents: stage -> stages it needs / that need it
    step_deps: stage -> step -> sibling steps it needs
    stage_order: topological order, ties broken by declaration order
    step_order: stage -> declaration order constrained by step depends_on
    """
    stages: Mapping[str, Stage]
    stage_deps: Mapping[str, FrozenSet[str]]
    stage_dependents: Mapping[str, FrozenSet[str]]
    step_deps: Mapping[str, Mapping[str, FrozenSet[str]]]
    stage_order: Tuple[str, ...]
    step_order: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.stages)

    def __contains__(self, stage: str) -> bool:
        return stage in self.stages

    def ancestors(self, stage: str) -> Set[str]:
        """Transitive dependencies of a stage (not including itself)."""
        seen: Set[str] = set()
        stack = list(self.stage_deps[stage])
        while stack:
            name = stack.pop()
            if name in seen:
                continue
            seen.add(name)
            stack.extend(self.stage_deps[name])
        return seen

    def descendants(self, stage: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self.stage_dependents[stage])
        while stack:
            name = stack.pop()
            if name in seen:
                continue
            seen.add(name)
            stack.extend(self.stage_dependents[name])
        return seen

    def scoped(self, stage: str) -> "ExecutionGraph":
        """
        Subgraph holding `stage` and its transitive dependencies only.
        Unrelated stages are dropped entirely.
        """
        if stage not in self.stages:
            raise GraphError(
                kind=UNRESOLVED_REFERENCE,
                message=f"Stage not found: {stage}",
                details={"known_stages": sorted(self.stages)},
            )
        keep = self.ancestors(stage) | {stage}
        return ExecutionGraph(
            stages={n: s for n, s in self.stages.items() if n in keep},
            stage_deps={n: self.stage_deps[n] for n in keep},
            stage_dependents={n: frozenset(self.stage_dependents[n] & keep) for n in keep},
            step_deps={n: self.step_deps[n] for n in keep},
            stage_order=tuple(n for n in self.stage_order if n in keep),
            step_order={n: self.step_order[n] for n in keep},
        )

    def levels(self) -> List[List[str]]:
        """Stages grouped into waves that have no ordering relation inside a wave."""
        depth: Dict[str, int] = {}
        for name in self.stage_order:
            deps = self.stage_deps[name]
            depth[name] = 1 + max((depth[d] for d in deps), default=-1)
        out: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for name in self.stage_order:
            out[depth[name]].append(name)
        return out


# ----------------------------------------------------------------------
# Validation helpers
# ----------------------------------------------------------------------

def _check_unique(names: Sequence[str], scope: str) -> None:
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise GraphError(
            kind=DUPLICATE_NAME,
            message=f"Duplicate {scope} names found: {dupes}",
            details={"names": dupes},
        )


def _find_cycle(nodes: Sequence[str], deps: Mapping[str, FrozenSet[str]]) -> Tuple[str, ...]:
    """
    Three-color depth-first traversal.
    Returns the participants of the first cycle found, () if the graph is a DAG.
    """
    color = {n: _WHITE for n in nodes}
    path: List[str] = []

    def visit(node: str) -> Tuple[str, ...]:
        color[node] = _GREY
        path.append(node)
        for nxt in sorted(deps[node], key=nodes.index):
            if color[nxt] == _GREY:
                # back edge: the cycle is the path suffix starting at nxt
                return tuple(path[path.index(nxt):])
            if color[nxt] == _WHITE:
                found = visit(nxt)
                if found:
                    return found
        path.pop()
        color[node] = _BLACK
        return ()

    for n in nodes:
        if color[n] == _WHITE:
            found = visit(n)
            if found:
                return found
    return ()


def _stable_toposort(nodes: Sequence[str], deps: Mapping[str, FrozenSet[str]]) -> Tuple[str, ...]:
    """Kahn's algorithm; among ready nodes the earliest declared goes first."""
    index = {n: i for i, n in enumerate(nodes)}
    indeg = {n: len(deps[n]) for n in nodes}
    dependents: Dict[str, Set[str]] = {n: set() for n in nodes}
    for n in nodes:
        for d in deps[n]:
            dependents[d].add(n)

    ready = [index[n] for n in nodes if indeg[n] == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        node = nodes[heapq.heappop(ready)]
        order.append(node)
        for child in dependents[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(ready, index[child])
    return tuple(order)


def _step_graph(stage: Stage) -> Tuple[Dict[str, FrozenSet[str]], Tuple[str, ...]]:
    names = [s.name for s in stage.steps]
    _check_unique(names, f"step (stage '{stage.name}')")
    known = set(names)

    deps: Dict[str, FrozenSet[str]] = {}
    for s in stage.steps:
        for d in s.depends_on:
            if d not in known:
                raise GraphError(
                    kind=UNRESOLVED_REFERENCE,
                    message=(
                        f"Step '{step_id(stage.name, s.name)}' depends on missing step '{d}'. "
                        f"Known steps: {sorted(known)}"
                    ),
                    details={"stage": stage.name, "step": s.name, "reference": d},
                )
        deps[s.name] = frozenset(s.depends_on)

    cycle = _find_cycle(names, deps)
    if cycle:
        ids = tuple(step_id(stage.name, n) for n in cycle)
        raise GraphError(
            kind=CYCLIC_DEPENDENCY,
            message=f"Cyclic dependency between steps: {' -> '.join(ids + ids[:1])}",
            details={"stage": stage.name},
            cycle=ids,
        )
    return deps, _stable_toposort(names, deps)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def build_graph(config: PipelineConfig) -> ExecutionGraph:
    """
    Build and validate the execution graph.

    Raises GraphError on duplicate names, unresolved references or cycles,
    before anything has been executed.
    """
    names = [s.name for s in config.stages]
    _check_unique(names, "stage")
    known = set(names)

    stage_deps: Dict[str, FrozenSet[str]] = {}
    for stage in config.stages:
        for d in stage.depends_on:
            if d not in known:
                raise GraphError(
                    kind=UNRESOLVED_REFERENCE,
                    message=f"Stage '{stage.name}' depends on missing stage '{d}'. Known stages: {sorted(known)}",
                    details={"stage": stage.name, "reference": d},
                )
        stage_deps[stage.name] = frozenset(stage.depends_on)

    cycle = _find_cycle(names, stage_deps)
    if cycle:
        raise GraphError(
            kind=CYCLIC_DEPENDENCY,
            message=f"Cyclic dependency between stages: {' -> '.join(cycle + cycle[:1])}",
            cycle=cycle,
        )

    step_deps: Dict[str, Dict[str, FrozenSet[str]]] = {}
    step_order: Dict[str, Tuple[str, ...]] = {}
    for stage in config.stages:
        step_deps[stage.name], step_order[stage.name] = _step_graph(stage)

    dependents: Dict[str, Set[str]] = {n: set() for n in names}
    for n, deps in stage_deps.items():
        for d in deps:
            dependents[d].add(n)

    return ExecutionGraph(
        stages={s.name: s for s in config.stages},
        stage_deps=stage_deps,
        stage_dependents={n: frozenset(v) for n, v in dependents.items()},
        step_deps=step_deps,
        stage_order=_stable_toposort(names, stage_deps),
        step_order=step_order,
    )
