from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional

class Settings(BaseSettings):
    """Orchestrator configuration. Read from PIPELINEX_* env vars or .env."""

    database_url: str = "sqlite:///pipelinex.db"

    # Scheduling
    concurrency_limit: int = 1  # Sequential by default
    default_stage_timeout: Optional[float] = None  # Seconds, None = no limit
    poll_interval: float = 0.5  # Cancellation poll while waiting on stages

    # Environment provisioning
    executor: str = "local"  # "local" or "kubernetes"
    workspace_root: Optional[str] = None  # Defaults to the system temp dir
    provision_retries: int = 3
    provision_backoff: float = 1.0  # Base delay, doubled per attempt
    provision_backoff_cap: float = 30.0

    # Artifacts
    artifact_root: str = ".pipelinex/artifacts"
    artifact_retention_days: int = 14

    # Target endpoints exposed to steps as PIPELINEX_REGISTRY_URL
    registry_url: str = ""

    # Kubernetes settings
    k8s_namespace: str = "pipelinex"
    k8s_in_cluster: bool = False  # Set True when running inside K8s
    job_ttl_after_finished: int = 300  # Clean up jobs after 5 min
    # PVC holding workspace_root, shared with step pods. Unset = hostPath
    k8s_workspace_claim: Optional[str] = None

    # Output
    output_tail_lines: int = 50
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "PIPELINEX_"
        frozen = True

@lru_cache()
def get_settings() -> Settings:
    return Settings()
