"""
Step executors - run one step command inside an environment.
"""

import logging
import os
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from kubernetes.client.rest import ApiException

from orchestrator.src.errors import ExecutionError
from orchestrator.src.k8s import (
    KubernetesClient,
    build_job,
    build_job_name,
    build_secret,
    get_job_status,
)
from orchestrator.src.services.log_collector import collect_logs, get_exit_code, get_job_pod
from orchestrator.src.services.provisioner import ScopedEnvironment
from orchestrator.src.services.secrets import SecretBindings

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True)
class CommandSpec:
    """A resolved step command ready to run."""

    script: str
    run_id: int
    stage: str
    index: int
    label: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None


@dataclass(frozen=True)
class StepOutcome:
    exit_code: int
    output: str = ""
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class StepExecutor(ABC):
    """Runs one step. Implementations are called from worker threads."""

    @abstractmethod
    def run(self, command: CommandSpec, env: ScopedEnvironment, secrets: SecretBindings) -> StepOutcome:
        """Run the command; raise ExecutionError if it could not be started."""


class LocalShellExecutor(StepExecutor):
    """Runs steps with /bin/sh in the environment's workspace."""

    def __init__(self, shell: str = "/bin/sh"):
        self.shell = shell

    def run(self, command: CommandSpec, env: ScopedEnvironment, secrets: SecretBindings) -> StepOutcome:
        process_env = {**os.environ, **env.variables, **command.env, **secrets.as_env()}
        try:
            proc = subprocess.run(
                [self.shell, "-ec", command.script],
                cwd=env.workspace,
                env=process_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=command.timeout,
            )
        except subprocess.TimeoutExpired as e:
            output = (e.output or b"").decode(errors="replace")
            return StepOutcome(exit_code=TIMEOUT_EXIT_CODE, output=output, timed_out=True)
        except OSError as e:
            raise ExecutionError(f"Failed to start {self.shell}: {e}") from e

        return StepOutcome(exit_code=proc.returncode, output=proc.stdout.decode(errors="replace"))


class KubernetesStepExecutor(StepExecutor):
    """
    Runs each step as a Kubernetes Job using the environment's image.

    The stage workspace is mounted into every Job (see `build_job`) and the
    step's credentials travel in a short-lived Secret. The Job is polled until
    it finishes or the step timeout expires, its pod logs become the step
    output, and the Job and Secret are deleted afterwards.
    """

    def __init__(
        self,
        k8s: KubernetesClient,
        ttl_after_finished: int = 300,
        poll_interval: float = 2.0,
        log_tail_lines: int = 1000,
        workspace_claim: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.k8s = k8s
        self.ttl_after_finished = ttl_after_finished
        self.poll_interval = poll_interval
        self.log_tail_lines = log_tail_lines
        self.workspace_claim = workspace_claim
        self._sleep = sleep

    def run(self, command: CommandSpec, env: ScopedEnvironment, secrets: SecretBindings) -> StepOutcome:
        job_name = build_job_name(command.run_id, command.stage, command.index)
        secret_env = secrets.as_env()
        secret_name = f"{job_name}-secrets" if secret_env else None

        job = build_job(
            run_id=command.run_id,
            stage=command.stage,
            step_index=command.index,
            script=command.script,
            namespace=self.k8s.namespace,
            image=env.image,
            env_vars={**env.variables, **command.env},
            timeout=command.timeout,
            ttl_after_finished=self.ttl_after_finished,
            workspace=str(env.workspace),
            workspace_claim=self.workspace_claim,
            secret_name=secret_name,
            secret_keys=list(secret_env),
        )
        logger.info(f"Creating job {job_name}")

        try:
            if secret_name:
                self._apply_secret(secret_name, secret_env, command.run_id)
            self._create(job)
            return self._follow(job_name, command.timeout)
        except ExecutionError:
            raise
        except ApiException as e:
            raise ExecutionError(f"Kubernetes API error for job {job_name}: {e.reason}") from e
        except Exception as e:
            # Connection failures come from urllib3, not as ApiException
            raise ExecutionError(f"Kubernetes API unreachable for job {job_name}: {e}") from e
        finally:
            if secret_name:
                self.k8s.delete_secret(secret_name)

    def _follow(self, job_name: str, timeout: Optional[float]) -> StepOutcome:
        try:
            status = self._wait(job_name, timeout)
            output = collect_logs(self.k8s, job_name, tail_lines=self.log_tail_lines)
            if status == "timeout":
                return StepOutcome(exit_code=TIMEOUT_EXIT_CODE, output=output, timed_out=True)

            exit_code = get_exit_code(get_job_pod(self.k8s, job_name))
            if exit_code is None:
                exit_code = 0 if status == "succeeded" else 1
            return StepOutcome(exit_code=exit_code, output=output)
        finally:
            self.k8s.delete_job(job_name)

    def _apply_secret(self, name: str, values: Dict[str, str], run_id: int) -> None:
        secret = build_secret(name, self.k8s.namespace, values, run_id)
        try:
            self.k8s.core.create_namespaced_secret(namespace=self.k8s.namespace, body=secret)
        except ApiException as e:
            if e.status != 409:
                raise
            self.k8s.core.replace_namespaced_secret(name=name, namespace=self.k8s.namespace, body=secret)

    def _create(self, job) -> None:
        try:
            self.k8s.batch.create_namespaced_job(namespace=self.k8s.namespace, body=job)
        except ApiException as e:
            if e.status != 409:
                raise
            # Left over from an interrupted run of the same step; recreate
            logger.warning(f"Job {job.metadata.name} already exists, deleting...")
            self.k8s.batch.delete_namespaced_job(
                name=job.metadata.name,
                namespace=self.k8s.namespace,
                body={},
            )
            self._sleep(self.poll_interval)
            self.k8s.batch.create_namespaced_job(namespace=self.k8s.namespace, body=job)

    def _wait(self, job_name: str, timeout: Optional[float]) -> str:
        """Poll the Job; returns 'succeeded', 'failed' or 'timeout'."""
        start_time = time.monotonic()
        while True:
            if timeout is not None and time.monotonic() - start_time > timeout:
                logger.error(f"Job {job_name} timed out after {timeout}s")
                return "timeout"

            try:
                job = self.k8s.batch.read_namespaced_job(
                    name=job_name,
                    namespace=self.k8s.namespace,
                )
            except ApiException as e:
                if e.status == 404:
                    raise ExecutionError(f"Job {job_name} disappeared") from e
                logger.error(f"Error checking job status: {e}")
                self._sleep(self.poll_interval)
                continue

            status = get_job_status(job)
            if status in ("succeeded", "failed"):
                return status

            self._sleep(self.poll_interval)
