from orchestrator.src.models.pipeline import (
    EnvironmentSpec,
    StepSpec,
    PostHooks,
    StageSpec,
    PipelineDefinition,
)
from orchestrator.src.models.run import (
    RunStatus,
    StageStatus,
    SkipReason,
    ErrorKind,
    ArtifactRef,
    StageError,
    StageResult,
    Run,
    RunResult,
)

__all__ = [
    "EnvironmentSpec",
    "StepSpec",
    "PostHooks",
    "StageSpec",
    "PipelineDefinition",
    "RunStatus",
    "StageStatus",
    "SkipReason",
    "ErrorKind",
    "ArtifactRef",
    "StageError",
    "StageResult",
    "Run",
    "RunResult",
]
