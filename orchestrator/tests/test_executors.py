"""Tests for step executors."""

from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException

from orchestrator.src.errors import ExecutionError
from orchestrator.src.k8s import KubernetesClient
from orchestrator.src.models.pipeline import EnvironmentSpec
from orchestrator.src.services.executors import (
    TIMEOUT_EXIT_CODE,
    CommandSpec,
    KubernetesStepExecutor,
    LocalShellExecutor,
)
from orchestrator.src.services.provisioner import ScopedEnvironment
from orchestrator.src.services.secrets import SecretBindings


@pytest.fixture
def env(tmp_path):
    return ScopedEnvironment(
        id="Build-1",
        spec=EnvironmentSpec(image="python:3.12"),
        workspace=tmp_path,
        variables={"STAGE_VAR": "from-env"},
    )


def command(script, **kwargs):
    return CommandSpec(script=script, run_id=7, stage="Build", index=0, **kwargs)


def test_local_shell_success(env):
    outcome = LocalShellExecutor().run(
        command("echo $STAGE_VAR $STEP_VAR; pwd", env={"STEP_VAR": "from-step"}),
        env,
        SecretBindings(),
    )
    assert outcome.succeeded
    assert "from-env from-step" in outcome.output
    assert str(env.workspace) in outcome.output


def test_local_shell_failure_stops_at_first_error(env):
    outcome = LocalShellExecutor().run(
        command("echo before\nexit 3\necho after"), env, SecretBindings()
    )
    assert not outcome.succeeded
    assert outcome.exit_code == 3
    assert "before" in outcome.output
    assert "after" not in outcome.output


def test_local_shell_exposes_secrets(env):
    outcome = LocalShellExecutor().run(
        command('test "$DEPLOY_TOKEN" = s3cr3t'), env, SecretBindings({"deploy-token": "s3cr3t"})
    )
    assert outcome.succeeded


def test_local_shell_timeout(env):
    outcome = LocalShellExecutor().run(command("sleep 5", timeout=0.2), env, SecretBindings())
    assert outcome.timed_out
    assert outcome.exit_code == TIMEOUT_EXIT_CODE


def test_local_shell_missing_shell(env):
    with pytest.raises(ExecutionError, match="Failed to start"):
        LocalShellExecutor(shell="/nonexistent/sh").run(command("true"), env, SecretBindings())


def fake_job(succeeded=None, failed=None, active=None):
    job = MagicMock()
    job.status.succeeded = succeeded
    job.status.failed = failed
    job.status.active = active
    return job


def fake_pod(exit_code):
    pod = MagicMock()
    pod.metadata.name = "pod-1"
    status = MagicMock()
    status.state.terminated.exit_code = exit_code
    pod.status.container_statuses = [status]
    return pod


@pytest.fixture
def k8s():
    client = KubernetesClient("pipelinex", batch_v1=MagicMock(), core_v1=MagicMock())
    client.core.read_namespaced_pod_log.return_value = "building...\ndone\n"
    return client


def test_kubernetes_step_success(k8s, env):
    k8s.batch.read_namespaced_job.side_effect = [fake_job(active=1), fake_job(succeeded=1)]
    k8s.core.list_namespaced_pod.return_value.items = [fake_pod(0)]
    executor = KubernetesStepExecutor(k8s, sleep=lambda s: None)

    outcome = executor.run(command("make"), env, SecretBindings({"token": "t"}))

    assert outcome.succeeded
    assert outcome.output == "building...\ndone\n"
    job = k8s.batch.create_namespaced_job.call_args.kwargs["body"]
    container = job.spec.template.spec.containers[0]
    assert container.image == "python:3.12"
    assert container.args == ["make"]
    env_names = {e.name for e in container.env}
    assert {"STAGE_VAR", "TOKEN", "PIPELINEX_RUN_ID"} <= env_names
    k8s.batch.delete_namespaced_job.assert_called_once()


def test_kubernetes_step_mounts_stage_workspace(k8s, env):
    k8s.batch.read_namespaced_job.return_value = fake_job(succeeded=1)
    k8s.core.list_namespaced_pod.return_value.items = [fake_pod(0)]
    executor = KubernetesStepExecutor(k8s, workspace_claim="ws-claim", sleep=lambda s: None)

    executor.run(command("make"), env, SecretBindings())

    job = k8s.batch.create_namespaced_job.call_args.kwargs["body"]
    pod_spec = job.spec.template.spec
    assert pod_spec.containers[0].working_dir == str(env.workspace)
    assert pod_spec.containers[0].volume_mounts[0].mount_path == str(env.workspace)
    assert pod_spec.volumes[0].persistent_volume_claim.claim_name == "ws-claim"


def test_kubernetes_step_keeps_secret_values_out_of_job(k8s, env):
    k8s.batch.read_namespaced_job.return_value = fake_job(succeeded=1)
    k8s.core.list_namespaced_pod.return_value.items = [fake_pod(0)]
    executor = KubernetesStepExecutor(k8s, sleep=lambda s: None)

    executor.run(command("make"), env, SecretBindings({"token": "s3cr3t"}))

    secret = k8s.core.create_namespaced_secret.call_args.kwargs["body"]
    assert secret.string_data == {"TOKEN": "s3cr3t"}
    job = k8s.batch.create_namespaced_job.call_args.kwargs["body"]
    assert "s3cr3t" not in str(job.to_dict())
    token = next(e for e in job.spec.template.spec.containers[0].env if e.name == "TOKEN")
    assert token.value_from.secret_key_ref.name == secret.metadata.name
    k8s.core.delete_namespaced_secret.assert_called_once_with(
        name=secret.metadata.name, namespace="pipelinex"
    )


def test_kubernetes_step_without_secrets_creates_no_secret(k8s, env):
    k8s.batch.read_namespaced_job.return_value = fake_job(succeeded=1)
    k8s.core.list_namespaced_pod.return_value.items = [fake_pod(0)]
    executor = KubernetesStepExecutor(k8s, sleep=lambda s: None)

    executor.run(command("make"), env, SecretBindings())

    k8s.core.create_namespaced_secret.assert_not_called()
    k8s.core.delete_namespaced_secret.assert_not_called()


def test_kubernetes_secret_deleted_when_job_rejected(k8s, env):
    k8s.batch.create_namespaced_job.side_effect = ApiException(status=403, reason="Forbidden")
    executor = KubernetesStepExecutor(k8s, sleep=lambda s: None)

    with pytest.raises(ExecutionError):
        executor.run(command("make"), env, SecretBindings({"token": "t"}))
    k8s.core.delete_namespaced_secret.assert_called_once()


def test_kubernetes_api_unreachable(k8s, env):
    k8s.batch.create_namespaced_job.side_effect = ConnectionError("connection refused")
    executor = KubernetesStepExecutor(k8s, sleep=lambda s: None)

    with pytest.raises(ExecutionError, match="connection refused"):
        executor.run(command("make"), env, SecretBindings())


def test_kubernetes_step_failure_exit_code(k8s, env):
    k8s.batch.read_namespaced_job.return_value = fake_job(failed=1)
    k8s.core.list_namespaced_pod.return_value.items = [fake_pod(2)]
    executor = KubernetesStepExecutor(k8s, sleep=lambda s: None)

    outcome = executor.run(command("make test"), env, SecretBindings())

    assert not outcome.succeeded
    assert outcome.exit_code == 2


def test_kubernetes_step_timeout(k8s, env):
    k8s.batch.read_namespaced_job.return_value = fake_job(active=1)
    executor = KubernetesStepExecutor(k8s, poll_interval=0.01)

    outcome = executor.run(command("sleep 600", timeout=0.05), env, SecretBindings())

    assert outcome.timed_out
    k8s.batch.delete_namespaced_job.assert_called_once()


def test_kubernetes_job_already_exists(k8s, env):
    k8s.batch.create_namespaced_job.side_effect = [ApiException(status=409), None]
    k8s.batch.read_namespaced_job.return_value = fake_job(succeeded=1)
    k8s.core.list_namespaced_pod.return_value.items = [fake_pod(0)]
    executor = KubernetesStepExecutor(k8s, sleep=lambda s: None)

    assert executor.run(command("make"), env, SecretBindings()).succeeded
    assert k8s.batch.create_namespaced_job.call_count == 2


def test_kubernetes_create_rejected(k8s, env):
    k8s.batch.create_namespaced_job.side_effect = ApiException(status=403, reason="Forbidden")
    executor = KubernetesStepExecutor(k8s, sleep=lambda s: None)

    with pytest.raises(ExecutionError, match="Forbidden"):
        executor.run(command("make"), env, SecretBindings())


def test_kubernetes_job_disappeared(k8s, env):
    k8s.batch.read_namespaced_job.side_effect = ApiException(status=404)
    executor = KubernetesStepExecutor(k8s, sleep=lambda s: None)

    with pytest.raises(ExecutionError, match="disappeared"):
        executor.run(command("make"), env, SecretBindings())
    k8s.batch.delete_namespaced_job.assert_called_once()
