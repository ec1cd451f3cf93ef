"""
Persist pipeline run and stage status to the database.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional

from sqlalchemy import create_engine, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload, sessionmaker

from orchestrator.src.errors import PersistenceError, RunNotFoundError, TerminalRunError
from orchestrator.src.models.db import Base, PipelineRun, StageRecord
from orchestrator.src.models.pipeline import PipelineDefinition
from orchestrator.src.models.run import (
    ArtifactRef,
    Run,
    RunStatus,
    StageError,
    StageResult,
    StageStatus,
)

logger = logging.getLogger(__name__)

INCOMPLETE_STATUSES = (RunStatus.PENDING.value, RunStatus.RUNNING.value)


class RunStateStore:
    """
    Single source of truth for run and stage status.

    Writes for one run are serialized with a per-run lock; saving the same
    run content twice leaves the stored rows unchanged.
    """

    def __init__(self, database_url: str):
        try:
            self._engine = create_engine(database_url)
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cannot open state store {database_url}: {e}") from e
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, run_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(run_id, threading.Lock())

    @contextmanager
    def _session(self):
        try:
            with self._sessions() as session:
                yield session
        except SQLAlchemyError as e:
            raise PersistenceError(f"State store error: {e}") from e

    def next_run_id(self) -> int:
        with self._session() as session:
            last = session.execute(select(func.max(PipelineRun.id))).scalar()
            return (last or 0) + 1

    def create_run(self, pipeline: PipelineDefinition, attempts: int = 5) -> Run:
        """Allocate the next build number and persist a pending run."""
        for _ in range(attempts):
            try:
                run = Run.create(self.next_run_id(), pipeline)
                with self._session() as session:
                    session.add(self._new_record(run))
                    session.commit()
                    logger.info(f"Created run {run.id} for pipeline '{pipeline.name}'")
                    return run
            except PersistenceError as e:
                # Another process took the same number
                if not isinstance(e.__cause__, IntegrityError):
                    raise
        raise PersistenceError("Could not allocate a run id")

    def save(self, run: Run) -> None:
        """Insert or update a run and all its stage results."""
        with self._lock(run.id):
            with self._session() as session:
                record = self._get_record(session, run.id)
                if record is None:
                    session.add(self._new_record(run))
                    session.commit()
                    return

                stored = self._to_run(record)
                if self._same_content(stored, run):
                    return
                if RunStatus(record.status).terminal:
                    raise TerminalRunError(
                        f"Run {run.id} finished with status {record.status} and cannot change"
                    )

                self._apply(record, run)
                session.commit()
                logger.debug(f"Saved run {run.id} status={run.status.value}")

    def load(self, run_id: int) -> Run:
        with self._session() as session:
            record = self._get_record(session, run_id)
            if record is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            return self._to_run(record)

    def list_by_status(self, *statuses: str) -> List[Run]:
        with self._session() as session:
            query = (
                select(PipelineRun)
                .options(selectinload(PipelineRun.stages))
                .where(PipelineRun.status.in_(statuses))
                .order_by(PipelineRun.id)
            )
            return [self._to_run(r) for r in session.execute(query).scalars().all()]

    def list_incomplete(self) -> List[Run]:
        return self.list_by_status(*INCOMPLETE_STATUSES)

    def request_cancel(self, run_id: int) -> bool:
        """
        Flag a run for cooperative cancellation.
        Returns False when the run already finished.
        """
        with self._session() as session:
            record = self._get_record(session, run_id)
            if record is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            if RunStatus(record.status).terminal:
                return False
            session.execute(
                update(PipelineRun)
                .where(PipelineRun.id == run_id)
                .values(cancel_requested=True)
            )
            session.commit()
            logger.info(f"Cancellation requested for run {run_id}")
            return True

    def is_cancel_requested(self, run_id: int) -> bool:
        with self._session() as session:
            value = session.execute(
                select(PipelineRun.cancel_requested).where(PipelineRun.id == run_id)
            ).scalar()
            return bool(value)

    # -- mapping ---------------------------------------------------------

    @staticmethod
    def _get_record(session, run_id: int) -> Optional[PipelineRun]:
        query = (
            select(PipelineRun)
            .options(selectinload(PipelineRun.stages))
            .where(PipelineRun.id == run_id)
        )
        return session.execute(query).scalar_one_or_none()

    @staticmethod
    def _same_content(stored: Run, run: Run) -> bool:
        # cancel_requested is owned by request_cancel
        exclude = {"cancel_requested"}
        return stored.model_dump(exclude=exclude) == run.model_dump(exclude=exclude)

    def _new_record(self, run: Run) -> PipelineRun:
        record = PipelineRun(id=run.id, cancel_requested=run.cancel_requested)
        self._apply(record, run)
        return record

    @staticmethod
    def _apply(record: PipelineRun, run: Run) -> None:
        record.name = run.pipeline.name
        record.status = run.status.value
        record.config = run.pipeline.model_dump(mode="json")
        record.artifacts = {k: ref.model_dump() for k, ref in run.artifacts.items()}
        record.cancel_requested = bool(record.cancel_requested) or run.cancel_requested
        record.started_at = run.started_at
        record.finished_at = run.finished_at

        existing = {s.name: s for s in record.stages}
        for order, result in enumerate(run.stages):
            row = existing.get(result.name)
            if row is None:
                row = StageRecord(name=result.name)
                record.stages.append(row)
            row.stage_order = order
            row.status = result.status.value
            row.skip_reason = result.skip_reason.value if result.skip_reason else None
            row.attempts = result.attempts
            row.error = result.error.model_dump(mode="json") if result.error else None
            row.output_ref = result.output_ref.model_dump() if result.output_ref else None
            row.logs = result.output_tail
            row.completed_steps = list(result.completed_steps)
            row.hook_errors = list(result.hook_errors)
            row.started_at = result.started_at
            row.finished_at = result.finished_at

    @staticmethod
    def _to_run(record: PipelineRun) -> Run:
        stages = [
            StageResult(
                name=row.name,
                status=StageStatus(row.status),
                skip_reason=row.skip_reason,
                attempts=row.attempts or 0,
                error=StageError(**row.error) if row.error else None,
                output_ref=ArtifactRef(**row.output_ref) if row.output_ref else None,
                output_tail=row.logs,
                completed_steps=list(row.completed_steps or []),
                hook_errors=list(row.hook_errors or []),
                started_at=row.started_at,
                finished_at=row.finished_at,
            )
            for row in sorted(record.stages, key=lambda s: s.stage_order)
        ]
        return Run(
            id=record.id,
            pipeline=PipelineDefinition.model_validate(record.config),
            status=RunStatus(record.status),
            started_at=record.started_at,
            finished_at=record.finished_at,
            stages=stages,
            artifacts={k: ArtifactRef(**v) for k, v in (record.artifacts or {}).items()},
            cancel_requested=bool(record.cancel_requested),
        )
