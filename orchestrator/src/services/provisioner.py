"""
Execution environment provisioning.

Every stage runs inside a ScopedEnvironment. Acquisition is retried with
exponential backoff; release happens exactly once per successful
provision, whichever way the stage ends.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

from orchestrator.src.errors import (
    CancellationRequested,
    EnvironmentProvisionError,
    InvalidEnvironmentError,
)
from orchestrator.src.models.pipeline import EnvironmentSpec

logger = logging.getLogger(__name__)


@dataclass
class ScopedEnvironment:
    id: str
    spec: EnvironmentSpec
    workspace: Path
    variables: Dict[str, str] = field(default_factory=dict)
    released: bool = False

    @property
    def image(self) -> Optional[str]:
        return self.spec.image


def compute_backoff(attempt: int, base: float, cap: float) -> float:
    """Delay before retry `attempt` (0-based): base * 2^attempt, capped."""
    return min(base * (2 ** attempt), cap)


class EnvironmentProvisioner(ABC):
    def __init__(
        self,
        retries: int = 3,
        backoff: float = 1.0,
        backoff_cap: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.retries = retries
        self.backoff = backoff
        self.backoff_cap = backoff_cap
        self._sleep = sleep

    @abstractmethod
    def provision(self, spec: EnvironmentSpec, label: str) -> ScopedEnvironment:
        """Create one environment. Raise EnvironmentProvisionError on failure."""

    @abstractmethod
    def _teardown(self, env: ScopedEnvironment) -> None:
        """Destroy an environment created by provision()."""

    def release(self, env: ScopedEnvironment) -> None:
        if env.released:
            return
        env.released = True
        try:
            self._teardown(env)
            logger.debug(f"Released environment {env.id}")
        except OSError as e:
            logger.warning(f"Failed to tear down environment {env.id}: {e}")

    def acquire(self, spec: EnvironmentSpec, label: str, token=None) -> ScopedEnvironment:
        """Provision with bounded retries and backoff."""
        last_error: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            if token is not None and token.cancelled:
                raise CancellationRequested(f"Cancelled while provisioning {label}")
            try:
                env = self.provision(spec, label)
                logger.debug(f"Provisioned environment {env.id} for {label}")
                return env
            except InvalidEnvironmentError:
                raise
            except (EnvironmentProvisionError, OSError) as e:
                last_error = e
                if attempt < self.retries:
                    delay = compute_backoff(attempt, self.backoff, self.backoff_cap)
                    logger.warning(
                        f"Provisioning {label} failed (attempt {attempt + 1}/{self.retries + 1}): "
                        f"{e}; retrying in {delay:.1f}s"
                    )
                    self._sleep(delay)

        raise EnvironmentProvisionError(
            f"Could not provision environment for {label} after {self.retries + 1} attempts: {last_error}"
        )

    @contextmanager
    def scoped(self, spec: EnvironmentSpec, label: str, token=None):
        env = self.acquire(spec, label, token)
        try:
            yield env
        finally:
            self.release(env)


@asynccontextmanager
async def scoped_environment(provisioner: EnvironmentProvisioner, spec: EnvironmentSpec,
                             label: str, token=None):
    """Async form of `provisioner.scoped` for the scheduler."""
    acquiring = asyncio.ensure_future(asyncio.to_thread(provisioner.acquire, spec, label, token))
    try:
        env = await asyncio.shield(acquiring)
    except asyncio.CancelledError:
        # The provisioning thread cannot be interrupted; release what it returns
        acquiring.add_done_callback(_release_on_completion(provisioner))
        raise

    try:
        yield env
    finally:
        await asyncio.to_thread(provisioner.release, env)


def _release_on_completion(provisioner: EnvironmentProvisioner):
    def callback(future: asyncio.Future):
        if not future.cancelled() and future.exception() is None:
            provisioner.release(future.result())
    return callback


class LocalEnvironmentProvisioner(EnvironmentProvisioner):
    """
    A temporary workspace directory per stage.

    Mounts are "<host path>:<name>" pairs linked into the workspace, or copied
    with `copy_mounts` when steps run where the host paths are not visible.
    """

    def __init__(self, root: Optional[str] = None, base_variables: Optional[Dict[str, str]] = None,
                 copy_mounts: bool = False, **kwargs):
        super().__init__(**kwargs)
        self.root = root
        self.base_variables = dict(base_variables or {})
        self.copy_mounts = copy_mounts

    def provision(self, spec: EnvironmentSpec, label: str) -> ScopedEnvironment:
        if self.root:
            os.makedirs(self.root, exist_ok=True)
        workspace = Path(tempfile.mkdtemp(prefix="pipelinex_", dir=self.root))

        try:
            for mount in spec.mounts:
                source, _, name = mount.partition(":")
                name = name or os.path.basename(source.rstrip("/"))
                if not os.path.exists(source):
                    raise InvalidEnvironmentError(f"Mount source {source} does not exist")
                self._mount(os.path.abspath(source), workspace / name)
        except (EnvironmentProvisionError, OSError):
            shutil.rmtree(workspace, ignore_errors=True)
            raise

        variables = {**self.base_variables, **spec.variables, "PIPELINEX_WORKSPACE": str(workspace)}
        return ScopedEnvironment(
            id=f"{label}-{uuid.uuid4().hex[:8]}",
            spec=spec,
            workspace=workspace,
            variables=variables,
        )

    def _mount(self, source: str, target: Path) -> None:
        if not self.copy_mounts:
            target.symlink_to(source)
        elif os.path.isdir(source):
            shutil.copytree(source, target, symlinks=True)
        else:
            shutil.copy2(source, target)

    def _teardown(self, env: ScopedEnvironment) -> None:
        shutil.rmtree(env.workspace)
