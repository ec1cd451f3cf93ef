"""
Pipeline scheduler - walks the stage graph and executes stages.

Stages whose dependencies have all finished are dispatched as asyncio tasks,
up to the configured concurrency limit. Blocking calls (provisioning, step
executors, state store access) run in worker threads. Every status transition
is written to the run state store before the scheduler moves on, so an
interrupted run can be resumed from its last persisted state.
"""

import asyncio
import logging
import threading
from pathlib import Path
from string import Template
from typing import Dict, List, Optional

from orchestrator.src.config import Settings
from orchestrator.src.errors import (
    ArtifactNotFoundError,
    CancellationRequested,
    EnvironmentProvisionError,
    ExecutionError,
    PersistenceError,
    SecretNotFoundError,
    StageExecutionError,
    TerminalRunError,
)
from orchestrator.src.models.pipeline import PipelineDefinition, PostHooks, StageSpec, StepSpec
from orchestrator.src.models.run import (
    ErrorKind,
    Run,
    RunResult,
    RunStatus,
    SkipReason,
    StageError,
    StageResult,
    StageStatus,
    utcnow,
)
from orchestrator.src.services.artifact_store import ArtifactStore
from orchestrator.src.services.dag_builder import StageGraph, build as build_graph
from orchestrator.src.services.executors import CommandSpec, StepExecutor
from orchestrator.src.services.log_collector import tail
from orchestrator.src.services.provisioner import (
    EnvironmentProvisioner,
    ScopedEnvironment,
    scoped_environment,
)
from orchestrator.src.services.secrets import SecretBindings, SecretResolver, StaticSecretResolver
from orchestrator.src.services.state_store import RunStateStore

logger = logging.getLogger(__name__)


class CancellationToken:
    """Run-level cancellation flag, safe to read from worker threads."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class Scheduler:
    def __init__(
        self,
        settings: Settings,
        store: RunStateStore,
        executor: StepExecutor,
        provisioner: EnvironmentProvisioner,
        artifacts: ArtifactStore,
        secrets: Optional[SecretResolver] = None,
    ):
        self.settings = settings
        self.store = store
        self.executor = executor
        self.provisioner = provisioner
        self.artifacts = artifacts
        self.secrets = secrets or StaticSecretResolver({})
        self._save_locks: Dict[int, asyncio.Lock] = {}

    async def run_pipeline(self, pipeline: PipelineDefinition,
                           token: Optional[CancellationToken] = None) -> RunResult:
        """Validate, register and execute a new run of `pipeline`."""
        graph = build_graph(pipeline)
        run = await asyncio.to_thread(self.store.create_run, pipeline)
        return await self.execute(graph, run, token)

    async def resume(self, run_id: int, token: Optional[CancellationToken] = None) -> RunResult:
        """Continue an interrupted run from its persisted state."""
        run = await asyncio.to_thread(self.store.load, run_id)
        graph = build_graph(run.pipeline)
        return await self.execute(graph, run, token)

    async def execute(self, graph: StageGraph, run: Run,
                      token: Optional[CancellationToken] = None) -> RunResult:
        if run.status.terminal:
            raise TerminalRunError(f"Run {run.id} already finished with status {run.status.value}")

        token = token or CancellationToken()
        try:
            self._prepare(graph, run)
            run.status = RunStatus.RUNNING
            run.started_at = run.started_at or utcnow()
            await self._save(run)
            logger.info(f"Executing run {run.id} ({graph.pipeline.name}) with {len(graph)} stages")

            await self._dispatch(graph, run, token)

            status = self._final_status(graph, run, token)
            await self._run_pipeline_hooks(graph, run, status)

            run.status = status
            run.finished_at = utcnow()
            run.cancel_requested = run.cancel_requested or token.cancelled
            await self._save(run)
        finally:
            # Locks belong to this event loop
            self._save_locks.pop(run.id, None)
        logger.info(f"Run {run.id} finished with status: {status.value}")
        return self._result(run)

    async def _save(self, run: Run) -> None:
        """
        Persist `run` from a worker thread.

        Writes for one run are serialized and each writes a snapshot, so
        stage tasks mutating the run meanwhile never tear a save.
        """
        lock = self._save_locks.setdefault(run.id, asyncio.Lock())
        async with lock:
            snapshot = run.model_copy(deep=True)
            await asyncio.to_thread(self.store.save, snapshot)

    # -- dispatch loop ---------------------------------------------------

    def _prepare(self, graph: StageGraph, run: Run) -> None:
        known = {result.name for result in run.stages}
        for name in graph.order:
            if name not in known:
                run.stages.append(StageResult(name=name))

        for result in run.stages:
            if result.status == StageStatus.RUNNING:
                # Interrupted mid-stage: run it again
                logger.warning(f"Run {run.id}: re-dispatching interrupted stage {result.name}")
                result.status = StageStatus.PENDING
                result.started_at = None

    async def _dispatch(self, graph: StageGraph, run: Run, token: CancellationToken) -> None:
        limit = max(1, self.settings.concurrency_limit)
        tasks: Dict[asyncio.Task, str] = {}
        blocked = any(
            run.stage(name).status == StageStatus.FAILED and graph.is_blocking(name)
            for name in graph.order
        )

        try:
            while True:
                await self._poll_cancellation(run, token)

                for name in graph.order:
                    result = run.stage(name)
                    if result.status != StageStatus.PENDING:
                        continue
                    stage = graph.stage(name)
                    deps = [run.stage(dep) for dep in graph.dependencies(name)]

                    finished = all(dep.status.terminal for dep in deps)

                    if token.cancelled:
                        await self._skip(graph, run, stage, SkipReason.CANCELLED)
                    elif finished and not all(dep.satisfies_dependents for dep in deps):
                        await self._skip(graph, run, stage, SkipReason.DEPENDENCY_FAILED)
                    elif blocked:
                        await self._skip(graph, run, stage, SkipReason.BLOCKED)
                    elif not finished:
                        continue
                    elif not stage.enabled:
                        await self._skip(graph, run, stage, SkipReason.POLICY)
                    elif len(tasks) < limit:
                        result.status = StageStatus.RUNNING
                        result.started_at = utcnow()
                        result.error = None
                        await self._save(run)
                        logger.info(f"Run {run.id}: starting stage {name}")
                        task = asyncio.create_task(self._run_stage(graph, run, stage, token))
                        tasks[task] = name

                if not tasks:
                    pending = [r.name for r in run.stages if not r.status.terminal]
                    if pending:
                        raise RuntimeError(f"Run {run.id} cannot make progress: {pending}")
                    return

                done, _ = await asyncio.wait(
                    set(tasks),
                    timeout=self.settings.poll_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    name = tasks.pop(task)
                    task.result()
                    if run.stage(name).status == StageStatus.FAILED and graph.is_blocking(name):
                        logger.warning(f"Run {run.id}: blocking stage {name} failed")
                        blocked = True
        finally:
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

    async def _poll_cancellation(self, run: Run, token: CancellationToken) -> None:
        if token.cancelled:
            return
        if await asyncio.to_thread(self.store.is_cancel_requested, run.id):
            logger.info(f"Run {run.id}: cancellation requested")
            token.cancel()

    async def _skip(self, graph: StageGraph, run: Run, stage: StageSpec, reason: SkipReason) -> None:
        result = run.stage(stage.name)
        result.status = StageStatus.SKIPPED
        result.skip_reason = reason
        result.finished_at = utcnow()
        await self._save(run)
        logger.info(f"Run {run.id}: skipped stage {stage.name} ({reason.value})")

        if stage.post.always:
            output = await self._run_stage_hooks(graph, run, stage, result, env=None)
            self._store_output(run, result, output)
            await self._save(run)

    # -- stage execution -------------------------------------------------

    async def _run_stage(self, graph: StageGraph, run: Run, stage: StageSpec,
                         token: CancellationToken) -> None:
        result = run.stage(stage.name)
        env_spec = graph.pipeline.environment.merged(stage.environment)

        for attempt in range(stage.retries + 1):
            last_attempt = attempt == stage.retries
            result.attempts += 1
            output: List[str] = []
            try:
                async with scoped_environment(self.provisioner, env_spec, stage.name, token) as env:
                    error = await self._execute_steps(run, stage, env, token, output)
                    if error is None or last_attempt or error.kind == ErrorKind.CANCELLED:
                        await self._finish(run, result, error)
                        output += await self._run_stage_hooks(graph, run, stage, result, env)
                        self._store_output(run, result, output)
                        await self._save(run)
                        return
            except EnvironmentProvisionError as e:
                error = StageError(kind=ErrorKind.PROVISION, message=str(e))
            except CancellationRequested as e:
                error = StageError(kind=ErrorKind.CANCELLED, message=str(e))

            if error.kind == ErrorKind.CANCELLED or (error.kind == ErrorKind.PROVISION and last_attempt):
                await self._finish(run, result, error)
                output += await self._run_stage_hooks(graph, run, stage, result, env=None)
                self._store_output(run, result, output)
                await self._save(run)
                return

            logger.warning(
                f"Run {run.id}: stage {stage.name} attempt {attempt + 1}/{stage.retries + 1} "
                f"failed ({error.message}); retrying"
            )
            await self._save(run)

    async def _execute_steps(self, run: Run, stage: StageSpec, env: ScopedEnvironment,
                             token: CancellationToken, output: List[str]) -> Optional[StageError]:
        """Run the stage's steps; return the failure, or None on success."""
        try:
            await self._run_steps(run, stage, env, token, output)
            return None
        except StageExecutionError as e:
            return StageError(kind=ErrorKind(e.kind), message=str(e), step=e.step)
        except CancellationRequested as e:
            return StageError(kind=ErrorKind.CANCELLED, message=str(e))
        except ExecutionError as e:
            return StageError(kind=ErrorKind.EXECUTOR, message=str(e))
        except ArtifactNotFoundError as e:
            return StageError(kind=ErrorKind.ARTIFACT, message=str(e))
        except SecretNotFoundError as e:
            return StageError(kind=ErrorKind.SECRET, message=str(e))
        except PersistenceError:
            raise
        except Exception as e:
            logger.exception(f"Run {run.id}: stage {stage.name} crashed")
            return StageError(kind=ErrorKind.EXECUTOR, message=f"{type(e).__name__}: {e}")

    async def _run_steps(self, run: Run, stage: StageSpec, env: ScopedEnvironment,
                         token: CancellationToken, output: List[str]) -> None:
        result = run.stage(stage.name)
        timeout = stage.timeout or self.settings.default_stage_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None

        for index, step in enumerate(stage.steps):
            if token.cancelled:
                raise CancellationRequested(f"Run {run.id} cancelled before step '{step.label}'")

            key = step.idempotency_key
            if key and key in result.completed_steps:
                logger.info(f"Run {run.id}: step '{step.label}' already done ({key}), not repeating")
                continue

            remaining = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise self._timeout_error(stage, timeout, step)

            self._materialize(run, step, env)
            secrets = self.secrets.bind(step.credentials)
            command = self._command(run, stage, step, index, env, remaining)

            logger.info(f"Run {run.id}: stage {stage.name} step {index + 1}/{len(stage.steps)} '{step.label}'")
            outcome, overran = await self._await_step(command, env, secrets, remaining)
            output.append(f"$ {step.label}\n{secrets.mask(outcome.output) or ''}")

            if overran:
                raise self._timeout_error(stage, timeout, step)
            if outcome.timed_out:
                raise StageExecutionError(
                    f"Step '{step.label}' timed out", StageExecutionError.TIMEOUT, step.label
                )
            if not outcome.succeeded:
                raise StageExecutionError(
                    f"Step '{step.label}' exited with code {outcome.exit_code}",
                    StageExecutionError.STEP_FAILURE,
                    step.label,
                )

            self._collect(run, step, env)
            if key:
                result.completed_steps.append(key)
            await self._save(run)

    async def _await_step(self, command: CommandSpec, env: ScopedEnvironment,
                          secrets: SecretBindings, remaining: Optional[float]):
        """
        Run one step in a worker thread; returns `(outcome, overran)`.

        A worker thread cannot be interrupted. When the stage deadline passes
        first, the step is still waited for (the executor was given the same
        budget), so its workspace outlives it and its output is kept.
        """
        step_run = asyncio.ensure_future(asyncio.to_thread(self.executor.run, command, env, secrets))
        try:
            return await asyncio.wait_for(asyncio.shield(step_run), remaining), False
        except asyncio.TimeoutError:
            logger.warning(f"Run {command.run_id}: step '{command.label}' overran its stage deadline")
            return await step_run, True
        except asyncio.CancelledError:
            await asyncio.wait([step_run])
            raise

    @staticmethod
    def _timeout_error(stage: StageSpec, timeout: float, step: StepSpec) -> StageExecutionError:
        return StageExecutionError(
            f"Stage {stage.name} exceeded its {timeout}s timeout", StageExecutionError.TIMEOUT, step.label
        )

    def _command(self, run: Run, stage: StageSpec, step: StepSpec, index: int,
                 env: ScopedEnvironment, timeout: Optional[float]) -> CommandSpec:
        variables = {**env.variables, **step.env}
        return CommandSpec(
            script=Template(step.command).safe_substitute(variables),
            run_id=run.id,
            stage=stage.name,
            index=index,
            label=step.label,
            env={**step.env, "PIPELINEX_RUN_ID": str(run.id), "PIPELINEX_STAGE": stage.name},
            timeout=timeout,
        )

    async def _finish(self, run: Run, result: StageResult, error: Optional[StageError]) -> None:
        result.finished_at = utcnow()
        result.error = error
        if error is None:
            result.status = StageStatus.SUCCEEDED
            logger.info(f"Run {run.id}: stage {result.name} succeeded")
        else:
            result.status = StageStatus.FAILED
            logger.error(f"Run {run.id}: stage {result.name} failed: {error.message}")
        await self._save(run)

    # -- artifacts -------------------------------------------------------

    @staticmethod
    def _workspace_path(env: ScopedEnvironment, name: str) -> Path:
        root = env.workspace.resolve()
        path = (root / name).resolve()
        if path != root and root not in path.parents:
            raise ArtifactNotFoundError(f"Artifact '{name}' is outside the workspace")
        return path

    def _materialize(self, run: Run, step: StepSpec, env: ScopedEnvironment) -> None:
        for name in step.consumes:
            ref = run.artifacts.get(name)
            if ref is None:
                raise ArtifactNotFoundError(f"Artifact '{name}' was not produced by any earlier stage")
            path = self._workspace_path(env, name)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(self.artifacts.get(ref))

    def _collect(self, run: Run, step: StepSpec, env: ScopedEnvironment) -> None:
        for name in step.produces:
            path = self._workspace_path(env, name)
            if not path.is_file():
                raise ArtifactNotFoundError(f"Step '{step.label}' did not produce file '{name}'")
            run.artifacts[name] = self.artifacts.put(name, path.read_bytes(), run_id=run.id)
            logger.info(f"Run {run.id}: stored artifact {name}")

    def _store_output(self, run: Run, result: StageResult, output: List[str]) -> None:
        if not output:
            return
        text = "\n".join(output)
        result.output_ref = self.artifacts.put(f"logs/{result.name}", text.encode(), run_id=run.id)
        result.output_tail = tail(text, self.settings.output_tail_lines)

    # -- post hooks ------------------------------------------------------

    async def _run_stage_hooks(self, graph: StageGraph, run: Run, stage: StageSpec,
                               result: StageResult, env: Optional[ScopedEnvironment]) -> List[str]:
        env_spec = graph.pipeline.environment.merged(stage.environment)
        errors, output = await self._run_hooks(
            run, stage.name, stage.post, result.status, env, env_spec, first_index=len(stage.steps)
        )
        result.hook_errors.extend(errors)
        return output

    async def _run_pipeline_hooks(self, graph: StageGraph, run: Run, status: RunStatus) -> None:
        outcome = {
            RunStatus.SUCCEEDED: StageStatus.SUCCEEDED,
            RunStatus.FAILED: StageStatus.FAILED,
        }.get(status, StageStatus.SKIPPED)
        errors, _ = await self._run_hooks(
            run, "post", graph.pipeline.post, outcome, None, graph.pipeline.environment
        )
        for error in errors:
            logger.warning(f"Run {run.id}: pipeline post-hook failed: {error}")

    async def _run_hooks(self, run: Run, owner: str, hooks: PostHooks, outcome: StageStatus,
                         env: Optional[ScopedEnvironment], env_spec, first_index: int = 0):
        """
        Run `always` hooks, then `success` or `failure` hooks for `outcome`.

        Hook failures are logged and returned; they never change a status.
        """
        steps = list(hooks.always)
        if outcome == StageStatus.SUCCEEDED:
            steps += hooks.success
        elif outcome == StageStatus.FAILED:
            steps += hooks.failure
        if not steps:
            return [], []

        if env is None:
            try:
                async with scoped_environment(self.provisioner, env_spec, f"{owner}-post") as hook_env:
                    return await self._run_hook_steps(run, owner, steps, hook_env, first_index)
            except EnvironmentProvisionError as e:
                logger.warning(f"Run {run.id}: no environment for {owner} post-hooks: {e}")
                return [f"provision: {e}"], []
        return await self._run_hook_steps(run, owner, steps, env, first_index)

    async def _run_hook_steps(self, run: Run, owner: str, steps: List[StepSpec],
                              env: ScopedEnvironment, first_index: int):
        errors: List[str] = []
        output: List[str] = []
        for offset, step in enumerate(steps):
            secrets = SecretBindings()
            try:
                secrets = self.secrets.bind(step.credentials)
                command = CommandSpec(
                    script=Template(step.command).safe_substitute({**env.variables, **step.env}),
                    run_id=run.id,
                    stage=owner,
                    index=first_index + offset,
                    label=step.label,
                    env={**step.env, "PIPELINEX_RUN_ID": str(run.id)},
                )
                outcome = await asyncio.to_thread(self.executor.run, command, env, secrets)
            except (ExecutionError, SecretNotFoundError) as e:
                logger.warning(f"Run {run.id}: {owner} post-hook '{step.label}' could not run: {e}")
                errors.append(f"{step.label}: {e}")
                continue
            except Exception as e:
                logger.exception(f"Run {run.id}: {owner} post-hook '{step.label}' crashed")
                errors.append(f"{step.label}: {type(e).__name__}: {e}")
                continue

            output.append(f"$ {step.label} (post)\n{secrets.mask(outcome.output) or ''}")
            if not outcome.succeeded:
                logger.warning(
                    f"Run {run.id}: {owner} post-hook '{step.label}' exited with code {outcome.exit_code}"
                )
                errors.append(f"{step.label}: exit code {outcome.exit_code}")
        return errors, output

    # -- outcome ---------------------------------------------------------

    @staticmethod
    def _final_status(graph: StageGraph, run: Run, token: CancellationToken) -> RunStatus:
        if token.cancelled:
            return RunStatus.ABORTED
        required = [run.stage(name) for name in graph.order if graph.stage(name).required]
        if all(result.satisfies_dependents for result in required):
            return RunStatus.SUCCEEDED
        return RunStatus.FAILED

    @staticmethod
    def _result(run: Run) -> RunResult:
        failure = run.first_failure()
        return RunResult(
            run_id=run.id,
            status=run.status,
            stages={result.name: result.status for result in run.stages},
            failed_stage=failure.name if failure else None,
            output_tail=failure.output_tail if failure else None,
            infrastructure_failure=bool(failure and failure.error and failure.error.kind.infrastructure),
        )
