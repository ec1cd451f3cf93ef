"""
Collect logs and exit codes from Kubernetes pods.
"""

import logging
from typing import Optional
from kubernetes.client.rest import ApiException

from orchestrator.src.k8s.client import KubernetesClient

logger = logging.getLogger(__name__)

def get_job_pod(k8s: KubernetesClient, job_name: str):
    """Get the pod object for a job, or None."""
    try:
        pods = k8s.core.list_namespaced_pod(
            namespace=k8s.namespace,
            label_selector=f"job-name={job_name}",
        )

        if pods.items:
            return pods.items[0]
        return None
    except ApiException as e:
        logger.error(f"Failed to get pod for job {job_name}: {e}")
        return None

def get_exit_code(pod) -> Optional[int]:
    """Exit code of the step container, if it terminated."""
    statuses = (pod.status.container_statuses or []) if pod and pod.status else []
    for status in statuses:
        terminated = status.state.terminated if status.state else None
        if terminated is not None:
            return terminated.exit_code
    return None

def collect_logs(k8s: KubernetesClient, job_name: str, tail_lines: int = 1000) -> str:
    """Collect logs from a job's pod."""
    pod = get_job_pod(k8s, job_name)
    if pod is None:
        return "No pod found for job"

    pod_name = pod.metadata.name
    try:
        return k8s.core.read_namespaced_pod_log(
            name=pod_name,
            namespace=k8s.namespace,
            tail_lines=tail_lines,  # Limit log lines
        )
    except ApiException as e:
        if e.status == 400:
            # Pod might not have started
            return "Pod did not start"
        logger.error(f"Failed to collect logs for {pod_name}: {e}")
        return f"Error collecting logs: {e.reason}"

def tail(text: Optional[str], lines: int) -> str:
    """Last `lines` lines of captured output."""
    if not text:
        return ""
    return "\n".join(text.rstrip("\n").splitlines()[-lines:])
