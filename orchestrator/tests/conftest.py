"""Shared fixtures for orchestrator tests."""

import threading

import pytest

from orchestrator.src.config import Settings
from orchestrator.src.services.artifact_store import MemoryArtifactStore
from orchestrator.src.services.executors import StepExecutor, StepOutcome
from orchestrator.src.services.provisioner import LocalEnvironmentProvisioner
from orchestrator.src.services.scheduler import Scheduler
from orchestrator.src.services.state_store import RunStateStore


class FakeExecutor(StepExecutor):
    """Records commands; fails or runs custom actions for chosen scripts."""

    def __init__(self):
        self.calls = []
        self.failing = {}
        self.actions = {}
        self._lock = threading.Lock()

    def fail(self, script, times=None):
        self.failing[script] = times

    def on(self, script, action):
        self.actions[script] = action

    @property
    def scripts(self):
        return [c.script for c in self.calls]

    def run(self, command, env, secrets):
        with self._lock:
            self.calls.append(command)

        action = self.actions.get(command.script)
        if action is not None:
            outcome = action(command, env, secrets)
            if outcome is not None:
                return outcome

        if command.script in self.failing:
            remaining = self.failing[command.script]
            if remaining is None or remaining > 0:
                if remaining:
                    self.failing[command.script] = remaining - 1
                return StepOutcome(exit_code=1, output=f"{command.script}: error")

        return StepOutcome(exit_code=0, output=f"{command.script}: ok")


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'runs.db'}",
        artifact_root=str(tmp_path / "artifacts"),
        workspace_root=str(tmp_path / "workspaces"),
        poll_interval=0.02,
        provision_backoff=0.0,
    )


@pytest.fixture
def store(settings):
    return RunStateStore(settings.database_url)


@pytest.fixture
def make_scheduler(settings, store):
    def factory(executor, provisioner=None, secrets=None, artifacts=None, **overrides):
        scheduler_settings = settings.model_copy(update=overrides) if overrides else settings
        return Scheduler(
            settings=scheduler_settings,
            store=store,
            executor=executor,
            provisioner=provisioner or LocalEnvironmentProvisioner(
                root=settings.workspace_root, retries=0
            ),
            artifacts=artifacts or MemoryArtifactStore(),
            secrets=secrets,
        )
    return factory
