"""Tests for the Kubernetes Job builder."""

from unittest.mock import MagicMock

from orchestrator.src.k8s import build_job, build_job_name, build_secret, get_job_status


def test_job_name_is_dns_safe():
    name = build_job_name(12, "Unit Tests_And_More Stuff!", 3)
    assert name.startswith("px-12-")
    assert name.endswith("-3-unit-tests-and-more")
    assert len(name) <= 63
    assert name == name.lower()
    assert all(c.isalnum() or c == "-" for c in name)


def test_job_names_differ_per_stage():
    assert build_job_name(1, "Build", 0) != build_job_name(1, "build", 0)
    assert build_job_name(1, "Build", 0) != build_job_name(2, "Build", 0)


def test_build_job():
    job = build_job(
        run_id=5,
        stage="Build",
        step_index=1,
        script="make all",
        namespace="ci",
        env_vars={"B": "2", "A": "1"},
        timeout=90.5,
        ttl_after_finished=60,
    )

    assert job.metadata.namespace == "ci"
    assert job.metadata.labels["run-id"] == "5"
    assert job.spec.backoff_limit == 0
    assert job.spec.active_deadline_seconds == 90
    assert job.spec.ttl_seconds_after_finished == 60

    container = job.spec.template.spec.containers[0]
    assert container.image == "alpine:3"
    assert container.command == ["/bin/sh", "-ec"]
    assert container.args == ["make all"]
    names = [e.name for e in container.env]
    assert names == ["PIPELINEX_RUN_ID", "PIPELINEX_STAGE", "PIPELINEX_STEP_INDEX", "A", "B"]


def test_build_job_without_timeout():
    job = build_job(1, "Build", 0, "true", "ci", image="node:18")
    assert job.spec.active_deadline_seconds is None
    assert job.spec.template.spec.containers[0].image == "node:18"


def test_get_job_status():
    job = MagicMock()
    job.status.succeeded, job.status.failed, job.status.active = None, None, 1
    assert get_job_status(job) == "running"
    job.status.succeeded = 1
    assert get_job_status(job) == "succeeded"
    job.status = None
    assert get_job_status(job) == "pending"


def test_build_job_mounts_workspace_from_host():
    job = build_job(1, "Build", 0, "make", "ci", workspace="/var/pipelinex/Build-1-abc/")

    pod_spec = job.spec.template.spec
    container = pod_spec.containers[0]
    assert container.working_dir == "/var/pipelinex/Build-1-abc/"
    assert pod_spec.volumes[0].host_path.path == "/var/pipelinex/Build-1-abc/"
    assert pod_spec.volumes[0].persistent_volume_claim is None
    mount = container.volume_mounts[0]
    assert mount.name == pod_spec.volumes[0].name
    assert mount.mount_path == "/var/pipelinex/Build-1-abc/"
    assert mount.sub_path is None


def test_build_job_mounts_workspace_from_claim():
    job = build_job(
        1, "Build", 0, "make", "ci",
        workspace="/mnt/pipelinex/Build-1-abc",
        workspace_claim="pipelinex-workspaces",
    )

    pod_spec = job.spec.template.spec
    assert pod_spec.volumes[0].persistent_volume_claim.claim_name == "pipelinex-workspaces"
    assert pod_spec.volumes[0].host_path is None
    mount = pod_spec.containers[0].volume_mounts[0]
    assert mount.mount_path == "/mnt/pipelinex/Build-1-abc"
    assert mount.sub_path == "Build-1-abc"


def test_build_job_without_workspace_has_no_volumes():
    job = build_job(1, "Build", 0, "true", "ci")
    assert job.spec.template.spec.volumes is None
    assert job.spec.template.spec.containers[0].volume_mounts is None


def test_build_job_reads_secrets_by_reference():
    job = build_job(
        1, "Deploy", 0, "deploy.sh", "ci",
        env_vars={"REGION": "eu"},
        secret_name="px-1-deploy-secrets",
        secret_keys=["TOKEN"],
    )

    env = {e.name: e for e in job.spec.template.spec.containers[0].env}
    assert env["REGION"].value == "eu"
    assert env["TOKEN"].value is None
    ref = env["TOKEN"].value_from.secret_key_ref
    assert ref.name == "px-1-deploy-secrets"
    assert ref.key == "TOKEN"


def test_build_secret():
    secret = build_secret("px-1-deploy-secrets", "ci", {"TOKEN": "s3cr3t"}, run_id=1)

    assert secret.metadata.namespace == "ci"
    assert secret.metadata.labels["run-id"] == "1"
    assert secret.type == "Opaque"
    assert secret.string_data == {"TOKEN": "s3cr3t"}
