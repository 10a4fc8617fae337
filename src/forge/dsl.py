# src/forge/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .model import DEFAULT_IMAGE, CachePolicy, PipelineConfig, SecretDeclaration, Stage, Step


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def step(
    name: str,
    command: str,
    *,
    image: str = DEFAULT_IMAGE,
    working_dir: str | None = None,
    env: Optional[Dict[str, str]] = None,
    depends_on: Optional[List[str]] = None,
    secrets: Optional[List[str]] = None,
) -> Step:
    """Create a step."""
    return Step(
        name=name,
        command=command,
        image=image,
        working_dir=working_dir,
        env=env or {},
        depends_on=tuple(depends_on or ()),
        secrets=tuple(secrets) if secrets is not None else None,
    )


# ---------------------------------------------------------------------
# Functional Stage helper
# ---------------------------------------------------------------------

def stage(
    name: str,
    *steps: Step,  # allow: stage("x", step(...), step(...))
    parallel: bool = False,
    depends_on: Optional[List[str]] = None,
    image: str | None = None,  # default image applied to steps left on the default
    working_dir: str | None = None,  # default working_dir applied to steps missing one
) -> Stage:
    if not steps:
        raise ValueError(f"stage({name!r}) must have at least one step")

    steps_final = list(steps)
    if image is not None:
        steps_final = [s if s.image != DEFAULT_IMAGE else replace(s, image=image) for s in steps_final]
    if working_dir is not None:
        steps_final = [s if s.working_dir is not None else replace(s, working_dir=working_dir) for s in steps_final]

    return Stage(name=name, steps=tuple(steps_final), parallel=parallel, depends_on=tuple(depends_on or ()))


def secret(name: str, env_var: str | None = None, *, required: bool = True) -> SecretDeclaration:
    """secret("API_TOKEN", "FORGE_API_TOKEN"); the host variable defaults to the name."""
    return SecretDeclaration(name=name, env_var=env_var or name, required=required)


def pipeline(
    *stages: Stage,
    cache_dirs: Optional[List[str]] = None,
    cache_enabled: bool = True,
    secrets: Optional[List[SecretDeclaration]] = None,
) -> PipelineConfig:
    """
    Pipeline definition helper.

        pipeline(
            stage("build", step("install", "npm ci", image="node:18")),
            stage("test", step("unit", "npm test"), depends_on=["build"]),
            cache_dirs=["/app/node_modules"],
        )
    """
    return PipelineConfig(
        stages=tuple(stages),
        cache=CachePolicy(enabled=cache_enabled and bool(cache_dirs), directories=tuple(cache_dirs or ())),
        secrets=tuple(secrets or ()),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StageBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._parallel = False

    def depends_on(self, *stage_names: str):
        self._needs.extend(stage_names)
        return self

    def parallel(self, enabled: bool = True):
        self._parallel = enabled
        return self

    def define_step(self, name: str, command: str, image: str = DEFAULT_IMAGE, **kwargs):
        self._steps.append(step(name, command, image=image, **kwargs))
        return self

    def build(self) -> Stage:
        if not self._steps:
            raise ValueError(f"Stage '{self.name}' has no steps")
        return Stage(
            name=self.name,
            steps=tuple(self._steps),
            parallel=self._parallel,
            depends_on=tuple(self._needs),
        )


def build(name: str) -> StageBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return StageBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        stage("test", *matrix("node", ["16", "18"]).steps(
            lambda v: step(f"test-node{v}", "npm test", image=f"node:{v}-alpine")
        ), parallel=True)
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def steps(self, builder: Callable[[Any], Step]) -> List[Step]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)
