# model.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

DEFAULT_IMAGE = "alpine:latest"


@dataclass(frozen=True)
class Step:
    """A single command executed inside one sandbox."""
    name: str
    command: str
    image: str = DEFAULT_IMAGE
    working_dir: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    # Sibling step names (same stage) that must succeed first
    depends_on: Tuple[str, ...] = ()

    # Logical secret names this step uses; None -> every declared secret
    secrets: Optional[Tuple[str, ...]] = None

    def __post_init__(self) -> None:
        # frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, "env", MappingProxyType(dict(self.env or {})))
        object.__setattr__(self, "depends_on", tuple(self.depends_on or ()))
        if self.secrets is not None:
            object.__setattr__(self, "secrets", tuple(self.secrets))


@dataclass(frozen=True)
class Stage:
    """
    A named group of steps.

    parallel=True  -> every step is dispatched once the stage is ready
                      (intra-stage depends_on still orders them)
    parallel=False -> steps run one at a time in declaration order
    """
    name: str
    steps: Tuple[Step, ...]
    parallel: bool = False
    depends_on: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "depends_on", tuple(self.depends_on or ()))

    def step(self, name: str) -> Step:
        for s in self.steps:
            if s.name == name:
                return s
        raise KeyError(f"stage '{self.name}' has no step '{name}'")


@dataclass(frozen=True)
class CachePolicy:
    enabled: bool = False
    directories: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "directories", tuple(self.directories or ()))

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.directories)


@dataclass(frozen=True)
class SecretDeclaration:
    """`name` is the variable seen inside the sandbox, `env_var` the host variable."""
    name: str
    env_var: str
    required: bool = True


@dataclass(frozen=True)
class PipelineConfig:
    stages: Tuple[Stage, ...]
    cache: CachePolicy = field(default_factory=CachePolicy)
    secrets: Tuple[SecretDeclaration, ...] = ()
    version: str = "1.0"

    def __post_init__(self) -> None:
        object.__setattr__(self, "stages", tuple(self.stages))
        object.__setattr__(self, "secrets", tuple(self.secrets or ()))

    def stage(self, name: str) -> Stage:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(f"pipeline has no stage '{name}'")

    def with_cache(self, enabled: bool) -> "PipelineConfig":
        """Copy with the cache switched on/off (CLI --cache / --no-cache)."""
        return replace(self, cache=replace(self.cache, enabled=enabled))
