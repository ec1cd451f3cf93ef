"""
PipelineX Orchestrator - command-line entry point.

Usage:
    pipelinex run <pipeline-file> [--concurrency N]
    pipelinex status <run-id> [--json]
    pipelinex cancel <run-id>
    pipelinex resume <run-id>
    pipelinex list
    pipelinex gc [--days N]

Exit codes:
    0: Run succeeded
    1: Build failure (a required stage failed)
    2: Infrastructure failure (environment, executor or state store)
    3: Invalid pipeline or unknown run
    4: Run aborted
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import timedelta
from typing import Optional

from orchestrator.src.config import Settings, get_settings
from orchestrator.src.errors import (
    EnvironmentProvisionError,
    PersistenceError,
    RunNotFoundError,
    TerminalRunError,
    ValidationError,
)
from orchestrator.src.k8s import KubernetesClient
from orchestrator.src.models.run import Run, RunResult, RunStatus, StageStatus, utcnow
from orchestrator.src.services.artifact_store import FileSystemArtifactStore
from orchestrator.src.services.executors import KubernetesStepExecutor, LocalShellExecutor
from orchestrator.src.services.pipeline_parser import parse_pipeline_file
from orchestrator.src.services.provisioner import LocalEnvironmentProvisioner
from orchestrator.src.services.scheduler import CancellationToken, Scheduler
from orchestrator.src.services.secrets import EnvSecretResolver
from orchestrator.src.services.state_store import RunStateStore

logger = logging.getLogger(__name__)

EXIT_SUCCEEDED = 0
EXIT_BUILD_FAILURE = 1
EXIT_INFRA_FAILURE = 2
EXIT_INVALID = 3
EXIT_ABORTED = 4


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def build_scheduler(settings: Settings, store: Optional[RunStateStore] = None) -> Scheduler:
    """Wire the scheduler's collaborators from settings."""
    store = store or RunStateStore(settings.database_url)

    base_variables = {}
    if settings.registry_url:
        base_variables["PIPELINEX_REGISTRY_URL"] = settings.registry_url

    provisioner = LocalEnvironmentProvisioner(
        root=settings.workspace_root,
        base_variables=base_variables,
        retries=settings.provision_retries,
        backoff=settings.provision_backoff,
        backoff_cap=settings.provision_backoff_cap,
        # Job pods cannot follow symlinks into the orchestrator's filesystem
        copy_mounts=settings.executor == "kubernetes",
    )

    if settings.executor == "kubernetes":
        k8s = KubernetesClient.connect(settings.k8s_namespace, settings.k8s_in_cluster)
        k8s.ensure_namespace()
        executor = KubernetesStepExecutor(
            k8s,
            ttl_after_finished=settings.job_ttl_after_finished,
            workspace_claim=settings.k8s_workspace_claim,
        )
    elif settings.executor == "local":
        executor = LocalShellExecutor()
    else:
        raise ValidationError(f"Unknown executor '{settings.executor}' (expected local or kubernetes)")

    return Scheduler(
        settings=settings,
        store=store,
        executor=executor,
        provisioner=provisioner,
        artifacts=FileSystemArtifactStore(settings.artifact_root),
        secrets=EnvSecretResolver(),
    )


async def _execute_with_signals(start, token: CancellationToken) -> RunResult:
    """Run `start(token)`, turning SIGINT/SIGTERM into cooperative cancellation."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, token.cancel)
        except (NotImplementedError, RuntimeError):
            pass  # Not supported on this platform
    return await start(token)


def exit_code_for(result: RunResult) -> int:
    if result.status == RunStatus.SUCCEEDED:
        return EXIT_SUCCEEDED
    if result.status == RunStatus.ABORTED:
        return EXIT_ABORTED
    if result.infrastructure_failure:
        return EXIT_INFRA_FAILURE
    return EXIT_BUILD_FAILURE


def print_result(result: RunResult) -> None:
    print(f"Run #{result.run_id}: {result.status.value.upper()}")
    for name, status in result.stages.items():
        print(f"  {name:<30} {status.value}")
    if result.failed_stage:
        print(f"\nFirst failing stage: {result.failed_stage}")
        if result.output_tail:
            print("--- output (tail) ---")
            print(result.output_tail)


def print_run(run: Run) -> None:
    print(f"Run #{run.id} ({run.pipeline.name}): {run.status.value.upper()}")
    if run.started_at:
        print(f"  started:  {run.started_at.isoformat()}")
    if run.finished_at:
        print(f"  finished: {run.finished_at.isoformat()}")
    if run.cancel_requested and not run.status.terminal:
        print("  cancellation requested")
    for stage in run.stages:
        line = f"  {stage.name:<30} {stage.status.value}"
        if stage.status == StageStatus.SKIPPED and stage.skip_reason:
            line += f" ({stage.skip_reason.value})"
        if stage.error:
            line += f" - {stage.error.kind.value}: {stage.error.message}"
        print(line)
    failure = run.first_failure()
    if failure and failure.output_tail:
        print(f"\n--- {failure.name} output (tail) ---")
        print(failure.output_tail)


def _run_and_report(start) -> int:
    token = CancellationToken()
    try:
        result = asyncio.run(_execute_with_signals(start, token))
    except (RunNotFoundError, TerminalRunError):
        raise
    except PersistenceError as e:
        logger.error(f"State store failure, run left in its last saved state: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INFRA_FAILURE
    print_result(result)
    return exit_code_for(result)


def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    try:
        pipeline = parse_pipeline_file(args.pipeline_file)
    except ValidationError as e:
        print(f"Invalid pipeline: {e}", file=sys.stderr)
        return EXIT_INVALID

    if args.concurrency:
        settings = settings.model_copy(update={"concurrency_limit": args.concurrency})

    try:
        scheduler = build_scheduler(settings)
    except (PersistenceError, EnvironmentProvisionError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INFRA_FAILURE
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_INVALID

    async def start(token):
        return await scheduler.run_pipeline(pipeline, token)

    try:
        return _run_and_report(start)
    except ValidationError as e:
        print(f"Invalid pipeline: {e}", file=sys.stderr)
        return EXIT_INVALID


def cmd_resume(args: argparse.Namespace, settings: Settings) -> int:
    try:
        scheduler = build_scheduler(settings)
    except (PersistenceError, EnvironmentProvisionError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INFRA_FAILURE
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_INVALID

    async def start(token):
        return await scheduler.resume(args.run_id, token)

    try:
        return _run_and_report(start)
    except RunNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID
    except TerminalRunError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID


def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    store = RunStateStore(settings.database_url)
    try:
        run = store.load(args.run_id)
    except RunNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID

    if args.json:
        print(run.model_dump_json(indent=2))
    else:
        print_run(run)
    return EXIT_SUCCEEDED


def cmd_cancel(args: argparse.Namespace, settings: Settings) -> int:
    store = RunStateStore(settings.database_url)
    try:
        requested = store.request_cancel(args.run_id)
    except RunNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID

    if requested:
        print(f"Cancellation requested for run #{args.run_id}")
    else:
        print(f"Run #{args.run_id} already finished")
    return EXIT_SUCCEEDED


def cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    store = RunStateStore(settings.database_url)
    runs = store.list_incomplete()
    if not runs:
        print("No incomplete runs")
    for run in runs:
        print(f"#{run.id:<6} {run.status.value:<10} {run.pipeline.name}")
    return EXIT_SUCCEEDED


def cmd_gc(args: argparse.Namespace, settings: Settings) -> int:
    """Delete artifacts of finished runs older than the retention window."""
    store = RunStateStore(settings.database_url)
    artifacts = FileSystemArtifactStore(settings.artifact_root)
    days = args.days if args.days is not None else settings.artifact_retention_days
    cutoff = utcnow() - timedelta(days=days)

    runs = store.list_by_status(*(status.value for status in RunStatus))
    for run in runs:
        for ref in run.artifact_refs():
            artifacts.retain(ref, run.id)

    deleted = 0
    for run in runs:
        if run.status.terminal and run.finished_at and run.finished_at < cutoff:
            deleted += len(artifacts.release_run(run.id))
    print(f"Deleted {deleted} artifact blobs from runs finished before {cutoff.isoformat()}")
    return EXIT_SUCCEEDED


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pipelinex",
        description="Run DAG pipelines of stages.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute a pipeline file")
    run_parser.add_argument("pipeline_file", help="Path to the pipeline YAML file")
    run_parser.add_argument("--concurrency", type=int, default=None,
                            help="Maximum number of stages running at once")
    run_parser.set_defaults(func=cmd_run)

    status_parser = subparsers.add_parser("status", help="Show a run's status")
    status_parser.add_argument("run_id", type=int)
    status_parser.add_argument("--json", action="store_true", help="Print the run as JSON")
    status_parser.set_defaults(func=cmd_status)

    cancel_parser = subparsers.add_parser("cancel", help="Request cancellation of a run")
    cancel_parser.add_argument("run_id", type=int)
    cancel_parser.set_defaults(func=cmd_cancel)

    resume_parser = subparsers.add_parser("resume", help="Resume an interrupted run")
    resume_parser.add_argument("run_id", type=int)
    resume_parser.set_defaults(func=cmd_resume)

    list_parser = subparsers.add_parser("list", help="List incomplete runs")
    list_parser.set_defaults(func=cmd_list)

    gc_parser = subparsers.add_parser("gc", help="Delete artifacts of expired runs")
    gc_parser.add_argument("--days", type=int, default=None,
                           help="Retention window (default: artifact_retention_days)")
    gc_parser.set_defaults(func=cmd_gc)

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    settings = get_settings()
    configure_logging(settings.log_level)

    args = create_parser().parse_args(argv)
    try:
        return args.func(args, settings)
    except PersistenceError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INFRA_FAILURE


if __name__ == "__main__":
    sys.exit(main())
