from .dsl import step, stage, secret, pipeline, matrix, StageBuilder, build
from .model import Step, Stage, CachePolicy, SecretDeclaration, PipelineConfig
from .dag import build_graph, ExecutionGraph
from .runner import run_pipeline, plan_run, Scheduler
from .results import NodeState, PipelineResult, PipelineStatus, StageResult, StepResult

__all__ = [
    "step", "stage", "secret", "pipeline", "matrix", "StageBuilder", "build",
    "Step", "Stage", "CachePolicy", "SecretDeclaration", "PipelineConfig",
    "build_graph", "ExecutionGraph",
    "run_pipeline", "plan_run", "Scheduler",
    "NodeState", "PipelineResult", "PipelineStatus", "StageResult", "StepResult",
]
