# config.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .model import DEFAULT_IMAGE, CachePolicy, PipelineConfig, SecretDeclaration, Stage, Step

CONFIG_NOT_FOUND = "config_not_found"
INVALID_YAML = "invalid_yaml"
INVALID_CONFIG = "invalid_config"
CONFIG_EXISTS = "config_exists"

LEGACY_STAGE = "default"


# -------------------- Schemas --------------------

class StepSpec(BaseModel):
    name: str = ""
    command: str
    image: str = ""
    working_dir: str = ""
    env: Dict[str, str] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    secrets: Optional[List[str]] = None

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        # YAML turns `PORT: 8080` into an int
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v


class StageSpec(BaseModel):
    name: str
    steps: List[StepSpec] = Field(min_length=1)
    parallel: bool = False
    depends_on: List[str] = Field(default_factory=list)


class CacheSpec(BaseModel):
    enabled: bool = False
    directories: List[str] = Field(default_factory=list)

    @field_validator("directories")
    @classmethod
    def _absolute(cls, v: List[str]) -> List[str]:
        bad = [d for d in v if not d.startswith("/")]
        if bad:
            raise ValueError(f"cache directories must be absolute paths inside the sandbox: {bad}")
        return v


class SecretSpec(BaseModel):
    name: str
    env_var: str
    required: bool = True


class ForgeFile(BaseModel):
    """Root of forge.yaml. `steps` is the legacy single-stage format."""
    version: str = "1.0"
    stages: List[StageSpec] = Field(default_factory=list)
    steps: List[StepSpec] = Field(default_factory=list)
    cache: CacheSpec = Field(default_factory=CacheSpec)
    secrets: List[SecretSpec] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def _version_str(cls, v: Any) -> Any:
        return str(v) if isinstance(v, (int, float)) else v

    @model_validator(mode="after")
    def _not_empty(self) -> "ForgeFile":
        if not self.stages and not self.steps:
            raise ValueError("Configuration must have at least one stage or step")
        return self


# -------------------- Conversion --------------------

def _to_step(spec: StepSpec, index: int) -> Step:
    return Step(
        name=spec.name or f"step-{index + 1}",
        command=spec.command,
        image=spec.image or DEFAULT_IMAGE,
        working_dir=spec.working_dir or None,
        env=spec.env,
        depends_on=tuple(spec.depends_on),
        secrets=tuple(spec.secrets) if spec.secrets is not None else None,
    )


def to_pipeline_config(doc: ForgeFile) -> PipelineConfig:
    if doc.stages:
        stages = [
            Stage(
                name=s.name,
                steps=tuple(_to_step(st, i) for i, st in enumerate(s.steps)),
                parallel=s.parallel,
                depends_on=tuple(s.depends_on),
            )
            for s in doc.stages
        ]
    else:
        # old format: plain step list -> one sequential stage
        stages = [Stage(name=LEGACY_STAGE, steps=tuple(_to_step(st, i) for i, st in enumerate(doc.steps)))]

    return PipelineConfig(
        version=doc.version,
        stages=tuple(stages),
        cache=CachePolicy(enabled=doc.cache.enabled, directories=tuple(doc.cache.directories)),
        secrets=tuple(SecretDeclaration(name=s.name, env_var=s.env_var, required=s.required) for s in doc.secrets),
    )


def parse_config(text: str, source: str = "<string>") -> PipelineConfig:
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(kind=INVALID_YAML, message=f"{source}: invalid YAML", details={"error": str(e)})

    if not isinstance(raw, dict):
        raise ConfigError(kind=INVALID_CONFIG, message=f"{source}: top level must be a mapping")

    try:
        doc = ForgeFile.model_validate(raw)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        ]
        raise ConfigError(
            kind=INVALID_CONFIG,
            message=f"{source}: invalid configuration",
            details={"problems": "; ".join(problems)},
        )
    return to_pipeline_config(doc)


def load_config(path: str | Path) -> PipelineConfig:
    """Read and parse a forge.yaml file."""
    p = Path(path)
    if not p.exists():
        raise ConfigError(kind=CONFIG_NOT_FOUND, message=f"Configuration file not found: {p}")
    return parse_config(p.read_text(encoding="utf-8"), source=str(p))


# -------------------- Scaffold --------------------

EXAMPLE_CONFIG = """\
# FORGE Configuration File
version: "1.0"

# Define stages in your pipeline
stages:
  - name: setup
    steps:
      - name: Install Dependencies
        command: echo "Installing dependencies..."
        image: alpine:latest
    parallel: false

  - name: test
    steps:
      - name: Run Tests
        command: echo "Running tests..."
        image: alpine:latest
    depends_on:
      - setup

  - name: build
    steps:
      - name: Build Application
        command: echo "Building application..."
        image: alpine:latest
    depends_on:
      - test

# Cache configuration
cache:
  enabled: true
  directories:
    - /app/node_modules
    - /app/.cache

# Secrets configuration
secrets:
  - name: API_TOKEN
    env_var: FORGE_API_TOKEN
    required: false
"""


def write_example_config(path: str | Path, force: bool = False) -> Path:
    p = Path(path)
    if p.exists() and not force:
        raise ConfigError(
            kind=CONFIG_EXISTS,
            message=f"File {p} already exists. Use --force to overwrite.",
        )
    p.write_text(EXAMPLE_CONFIG, encoding="utf-8")
    return p
