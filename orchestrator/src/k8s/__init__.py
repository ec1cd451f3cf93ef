from orchestrator.src.k8s.client import KubernetesClient
from orchestrator.src.k8s.job_builder import (
    build_job,
    build_job_name,
    build_secret,
    get_job_status,
)

__all__ = [
    "KubernetesClient",
    "build_job",
    "build_job_name",
    "build_secret",
    "get_job_status",
]
