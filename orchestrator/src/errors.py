"""
Orchestrator error taxonomy.
"""

from typing import List, Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ValidationError(OrchestratorError):
    """Raised when a pipeline definition is rejected before execution."""


class PipelineConfigError(ValidationError):
    """Raised when a pipeline file cannot be parsed or has a bad shape."""


class UnknownDependencyError(ValidationError):
    """Raised when a stage depends on a stage that is not declared."""


class CyclicDependencyError(ValidationError):
    """Raised when stage dependencies form a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__("Cyclic dependency: " + " -> ".join(self.cycle))


class EnvironmentProvisionError(OrchestratorError):
    """Raised when an execution environment could not be acquired."""


class InvalidEnvironmentError(EnvironmentProvisionError):
    """Raised when an environment request is invalid. Never retried."""


class ExecutionError(OrchestratorError):
    """Raised by a step executor when the command could not be run at all."""


class StageExecutionError(OrchestratorError):
    """Raised when a stage fails. `kind` is STEP_FAILURE, TIMEOUT or CANCELLED."""

    STEP_FAILURE = "step-failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    def __init__(self, message: str, kind: str = STEP_FAILURE, step: Optional[str] = None):
        self.kind = kind
        self.step = step
        super().__init__(message)


class CancellationRequested(OrchestratorError):
    """Cooperative cancellation signal observed at a suspension point."""


class ArtifactNotFoundError(OrchestratorError):
    """Raised when an artifact reference or name cannot be resolved."""


class SecretNotFoundError(OrchestratorError):
    """Raised when a credential id has no value."""


class PersistenceError(OrchestratorError):
    """Raised when the run state store is unavailable or rejects a write."""


class RunNotFoundError(PersistenceError):
    """Raised when a run id is not in the state store."""


class TerminalRunError(PersistenceError):
    """Raised when a write would modify a run that already finished."""
