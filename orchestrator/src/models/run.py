"""
Run and stage execution models.
"""

from pydantic import BaseModel
from typing import List, Optional, Dict
from datetime import datetime, timezone
from enum import Enum

from orchestrator.src.models.pipeline import PipelineDefinition


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED)


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED)


class SkipReason(str, Enum):
    DEPENDENCY_FAILED = "dependency_failed"
    POLICY = "policy"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"


class ErrorKind(str, Enum):
    STEP_FAILURE = "step-failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    PROVISION = "provision"
    EXECUTOR = "executor"
    ARTIFACT = "artifact"
    SECRET = "secret"

    @property
    def infrastructure(self) -> bool:
        return self in (ErrorKind.PROVISION, ErrorKind.EXECUTOR)


class ArtifactRef(BaseModel):
    key: str
    digest: str
    size: int


class StageError(BaseModel):
    kind: ErrorKind
    message: str
    step: Optional[str] = None


class StageResult(BaseModel):
    name: str
    status: StageStatus = StageStatus.PENDING
    output_ref: Optional[ArtifactRef] = None
    output_tail: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[StageError] = None
    skip_reason: Optional[SkipReason] = None
    attempts: int = 0
    completed_steps: List[str] = []
    hook_errors: List[str] = []

    @property
    def satisfies_dependents(self) -> bool:
        """True when stages depending on this one may start."""
        return self.status == StageStatus.SUCCEEDED or (
            self.status == StageStatus.SKIPPED and self.skip_reason == SkipReason.POLICY
        )


class Run(BaseModel):
    id: int
    pipeline: PipelineDefinition
    status: RunStatus = RunStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    stages: List[StageResult] = []
    artifacts: Dict[str, ArtifactRef] = {}
    cancel_requested: bool = False

    @classmethod
    def create(cls, run_id: int, pipeline: PipelineDefinition) -> "Run":
        return cls(
            id=run_id,
            pipeline=pipeline,
            stages=[StageResult(name=stage.name) for stage in pipeline.stages],
        )

    def stage(self, name: str) -> StageResult:
        for result in self.stages:
            if result.name == name:
                return result
        raise KeyError(name)

    def artifact_refs(self) -> List[ArtifactRef]:
        """Every blob this run references, captured output included."""
        refs = list(self.artifacts.values())
        refs += [s.output_ref for s in self.stages if s.output_ref is not None]
        return refs

    def first_failure(self) -> Optional[StageResult]:
        failed = [s for s in self.stages if s.status == StageStatus.FAILED]
        if not failed:
            return None
        return min(failed, key=lambda s: s.finished_at or datetime.max)


class RunResult(BaseModel):
    run_id: int
    status: RunStatus
    stages: Dict[str, StageStatus]
    failed_stage: Optional[str] = None
    output_tail: Optional[str] = None
    infrastructure_failure: bool = False
