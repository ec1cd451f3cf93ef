"""
Pipeline definition models.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Dict, Optional


class EnvironmentSpec(BaseModel):
    """Execution context requested by a pipeline or stage."""

    model_config = ConfigDict(frozen=True)

    image: Optional[str] = None
    variables: Dict[str, str] = {}
    mounts: List[str] = []
    network: Optional[str] = None

    def merged(self, override: Optional["EnvironmentSpec"]) -> "EnvironmentSpec":
        """Return this environment with a stage-level override applied on top."""
        if override is None:
            return self
        return EnvironmentSpec(
            image=override.image or self.image,
            variables={**self.variables, **override.variables},
            mounts=list(dict.fromkeys(self.mounts + override.mounts)),
            network=override.network or self.network,
        )


class StepSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    command: str
    credentials: List[str] = []
    produces: List[str] = []
    consumes: List[str] = []
    env: Dict[str, str] = {}
    idempotency_key: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.command.split("\n", 1)[0][:40]


class PostHooks(BaseModel):
    model_config = ConfigDict(frozen=True)

    always: List[StepSpec] = []
    success: List[StepSpec] = []
    failure: List[StepSpec] = []

    def __bool__(self) -> bool:
        return bool(self.always or self.success or self.failure)


class StageSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    steps: List[StepSpec] = []
    environment: Optional[EnvironmentSpec] = None
    post: PostHooks = PostHooks()
    depends_on: Optional[List[str]] = None
    blocking: Optional[bool] = None
    required: bool = True
    enabled: bool = True
    timeout: Optional[float] = Field(default=None, gt=0)
    retries: int = Field(default=0, ge=0)


class PipelineDefinition(BaseModel):
    """Parsed pipeline. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    name: str = "Unnamed Pipeline"
    stages: List[StageSpec]
    environment: EnvironmentSpec = EnvironmentSpec()
    post: PostHooks = PostHooks()

    def stage(self, name: str) -> StageSpec:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)
