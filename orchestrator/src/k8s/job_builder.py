"""
Kubernetes Job builder for pipeline steps.
"""

from kubernetes import client
from typing import Dict, List, Optional
import hashlib
import os

DEFAULT_IMAGE = "alpine:3"

def build_job_name(run_id: int, stage: str, step_index: int) -> str:
    """Generate a unique job name."""
    # K8s names must be lowercase, alphanumeric, max 63 chars
    safe_name = stage.lower().replace(" ", "-").replace("_", "-")
    safe_name = "".join(c for c in safe_name if c.isalnum() or c == "-")
    safe_name = safe_name[:20].strip("-") or "stage"

    return f"px-{run_id}-{stage_hash(run_id, stage)}-{step_index}-{safe_name}"

def stage_hash(run_id: int, stage: str) -> str:
    """Short hash keeping names unique across stages that truncate alike."""
    return hashlib.md5(f"{run_id}/{stage}".encode()).hexdigest()[:6]

def build_job(
    run_id: int,
    stage: str,
    step_index: int,
    script: str,
    namespace: str,
    image: Optional[str] = None,
    env_vars: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    ttl_after_finished: int = 300,
    workspace: Optional[str] = None,
    workspace_claim: Optional[str] = None,
    secret_name: Optional[str] = None,
    secret_keys: Optional[List[str]] = None,
) -> client.V1Job:
    """
    Build a Kubernetes Job running one pipeline step.

    The stage workspace is mounted at its own path so every step of a stage
    sees the same files: from `workspace_claim` (a PVC also mounted by the
    orchestrator, the workspace directory used as subPath) or, without a
    claim, as a hostPath volume. Secret values never appear in the Job; each
    of `secret_keys` is read from the Secret `secret_name`.
    """
    job_name = build_job_name(run_id, stage, step_index)
    labels = {
        "app": "pipelinex",
        "run-id": str(run_id),
        "stage": stage_hash(run_id, stage),
        "step-index": str(step_index),
    }

    env = [
        client.V1EnvVar(name="PIPELINEX_RUN_ID", value=str(run_id)),
        client.V1EnvVar(name="PIPELINEX_STAGE", value=stage),
        client.V1EnvVar(name="PIPELINEX_STEP_INDEX", value=str(step_index)),
    ]

    if env_vars:
        for key, value in sorted(env_vars.items()):
            env.append(client.V1EnvVar(name=key, value=value))

    for key in sorted(secret_keys or []):
        env.append(client.V1EnvVar(
            name=key,
            value_from=client.V1EnvVarSource(
                secret_key_ref=client.V1SecretKeySelector(name=secret_name, key=key)
            ),
        ))

    volumes = None
    volume_mounts = None
    if workspace:
        if workspace_claim:
            source = {"persistent_volume_claim": client.V1PersistentVolumeClaimVolumeSource(
                claim_name=workspace_claim
            )}
            sub_path = os.path.basename(workspace.rstrip("/"))
        else:
            source = {"host_path": client.V1HostPathVolumeSource(path=workspace, type="Directory")}
            sub_path = None
        volumes = [client.V1Volume(name="workspace", **source)]
        volume_mounts = [client.V1VolumeMount(name="workspace", mount_path=workspace, sub_path=sub_path)]

    # -e so a multi-line step fails on its first failing line
    container = client.V1Container(
        name="step",
        image=image or DEFAULT_IMAGE,
        command=["/bin/sh", "-ec"],
        args=[script],
        env=env,
        working_dir=workspace,
        volume_mounts=volume_mounts,
        resources=client.V1ResourceRequirements(
            requests={"cpu": "100m", "memory": "128Mi"},
            limits={"cpu": "500m", "memory": "512Mi"},
        ),
    )

    pod_spec = client.V1PodSpec(
        containers=[container],
        restart_policy="Never",
        volumes=volumes,
    )

    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=labels),
        spec=pod_spec,
    )

    job_spec = client.V1JobSpec(
        template=template,
        backoff_limit=0,  # Retries are the scheduler's decision
        active_deadline_seconds=int(timeout) if timeout else None,
        ttl_seconds_after_finished=ttl_after_finished,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=namespace,
            labels=labels,
        ),
        spec=job_spec,
    )

def build_secret(name: str, namespace: str, values: Dict[str, str], run_id: int) -> client.V1Secret:
    """Secret holding one step's credentials, keyed by env var name."""
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels={"app": "pipelinex", "run-id": str(run_id)},
        ),
        type="Opaque",
        string_data=dict(values),
    )

def get_job_status(job: client.V1Job) -> str:
    """
    Determine job status from Kubernetes Job object.
    Returns: 'pending', 'running', 'succeeded', 'failed'
    """
    if job.status is None:
        return "pending"

    if job.status.succeeded and job.status.succeeded > 0:
        return "succeeded"

    if job.status.failed and job.status.failed > 0:
        return "failed"

    if job.status.active and job.status.active > 0:
        return "running"

    return "pending"
