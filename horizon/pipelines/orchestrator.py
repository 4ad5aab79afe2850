"""Resumable three-phase processing of a project's signals.

``ProcessingOrchestrator.run`` drives embedding, candidate search and Claude
verification in order, gated by the persisted phase. Every phase only touches
rows that lack its own output, so re-running after a crash or an error picks
up exactly where the previous run stopped.

Overlapping runs of the same project are excluded by a per-project
``asyncio.Lock`` kept in a registry owned by the orchestrator instance. A lock
held longer than ``stale_lock_minutes`` (measured from the persisted
``started_at``) is considered abandoned and replaced.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from horizon import models
from horizon.config import EmbeddingSettings, ProcessingSettings, settings
from horizon.pipelines import repair
from horizon.pipelines.embedding import generate_embeddings
from horizon.pipelines.similarity import calculate_embedding_similarities
from horizon.pipelines.verification import verify_candidates
from horizon.state import (
    ProcessingError,
    ProcessingPhase,
    ProcessingStateError,
    get_status,
    phase_is_outstanding,
    require_status,
    update_status,
)

if TYPE_CHECKING:
    from horizon_ai.claude import ClaudeClient
    from horizon_ai.embeddings import EmbeddingGenerator

logger = logging.getLogger(__name__)


class ProcessingInProgressError(ProcessingError):
    """Raised when an operation needs the project lock while a run holds it."""
    pass


class ProjectLockRegistry:
    """Project id -> ``asyncio.Lock``. One lock per project, no cross-project exclusion.

    Also tracks projects that gained work while their lock was held, so the
    holder can run again before releasing it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._reruns: set[str] = set()

    def get(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks[project_id] = asyncio.Lock()
        return lock

    def is_locked(self, project_id: str) -> bool:
        lock = self._locks.get(project_id)
        return lock is not None and lock.locked()

    def discard(self, project_id: str) -> None:
        """Forget the project's lock; a holder keeps its own reference and releases that."""
        self._locks.pop(project_id, None)

    def discard_if(self, project_id: str, lock: asyncio.Lock) -> bool:
        """Forget the project's lock only if it is still ``lock``."""
        if self._locks.get(project_id) is not lock:
            return False
        del self._locks[project_id]
        return True

    def request_rerun(self, project_id: str) -> None:
        self._reruns.add(project_id)

    def rerun_requested(self, project_id: str) -> bool:
        return project_id in self._reruns

    def take_rerun(self, project_id: str) -> bool:
        if project_id in self._reruns:
            self._reruns.discard(project_id)
            return True
        return False


PhaseRunner = Callable[[AsyncSession, str], Awaitable[object]]


class ProcessingOrchestrator:
    """Runs, resumes and repairs project processing."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        embedder: EmbeddingGenerator,
        claude_client: ClaudeClient,
        config: ProcessingSettings | None = None,
        *,
        embedding_config: EmbeddingSettings | None = None,
        locks: ProjectLockRegistry | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.embedder = embedder
        self.claude_client = claude_client
        self.config = config or settings.processing
        self.embedding_config = embedding_config or settings.embeddings
        self.locks = locks or ProjectLockRegistry()
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    @property
    def delay_seconds(self) -> float:
        return self.config.rate_limit_delay_ms / 1000

    def _phases(self) -> list[tuple[ProcessingPhase, PhaseRunner]]:
        return [
            (ProcessingPhase.EMBEDDING, self._run_embeddings),
            (ProcessingPhase.EMBEDDING_SIMILARITY, self._run_similarities),
            (ProcessingPhase.CLAUDE_VERIFICATION, self._run_verification),
        ]

    async def _run_embeddings(self, session: AsyncSession, project_id: str) -> int:
        return await generate_embeddings(
            session,
            project_id,
            self.embedder,
            concurrency=self.config.concurrency,
            max_text_length=self.embedding_config.max_text_length,
            commit_interval=self.config.progress_commit_interval,
        )

    async def _run_similarities(self, session: AsyncSession, project_id: str) -> int:
        return await calculate_embedding_similarities(
            session,
            project_id,
            top_n=self.config.top_n_candidates,
            commit_interval=self.config.progress_commit_interval,
        )

    async def _run_verification(self, session: AsyncSession, project_id: str) -> int:
        return await verify_candidates(
            session,
            project_id,
            self.claude_client,
            concurrency=self.config.verification_concurrency,
            delay_seconds=self.delay_seconds,
            min_score=self.config.min_verified_score,
            commit_interval=self.config.progress_commit_interval,
            sleep=self._sleep,
        )

    async def _lock_is_stale(self, project_id: str) -> bool:
        try:
            async with self.session_factory() as session:
                status = await get_status(session, project_id)
        except SQLAlchemyError as e:
            logger.error(f"Error checking processing status for lock timeout on project {project_id}: {e}")
            return False

        if status is None or status.started_at is None:
            return False
        age = models.utcnow() - status.started_at
        if age > timedelta(minutes=self.config.stale_lock_minutes):
            logger.warning(
                f"Processing lock for project {project_id} held since {status.started_at} "
                f"({age.total_seconds() / 60:.1f} minutes), clearing lock"
            )
            return True
        return False

    async def run(self, project_id: str) -> None:
        """Process every outstanding phase for the project. Never raises.

        Returns immediately if another run holds the project's lock, unless
        that lock is stale, in which case it is cleared and the run retried
        once. While holding the lock, the run starts over from ``pending``
        whenever a rerun was requested for the project.
        """
        await self._run(project_id, retry_stale=True)

    async def _run(self, project_id: str, *, retry_stale: bool) -> None:
        lock = self.locks.get(project_id)
        if lock.locked():
            if (
                retry_stale
                and await self._lock_is_stale(project_id)
                and self.locks.discard_if(project_id, lock)
            ):
                await self._run(project_id, retry_stale=False)
                return
            logger.warning(f"Processing already in progress for project {project_id}, skipping")
            return

        async with lock:
            while True:
                rerun = self.locks.take_rerun(project_id)
                async with self.session_factory() as session:
                    if rerun:
                        await self._reset_for_rerun(session, project_id)
                    await self._execute(session, project_id)
                # Nothing awaits between this check and the lock release
                if not self.locks.rerun_requested(project_id):
                    break

    async def _reset_for_rerun(self, session: AsyncSession, project_id: str) -> None:
        logger.info(f"New signals arrived for project {project_id} during processing, restarting from pending")
        try:
            await update_status(
                session,
                project_id,
                validate_transition=False,
                status=ProcessingPhase.PENDING,
                failed_phase=None,
                error_message=None,
                completed_at=None,
            )
        except (ProcessingStateError, SQLAlchemyError) as e:
            logger.error(f"Failed to reset processing status for project {project_id}: {e}")
            await session.rollback()

    async def _execute(self, session: AsyncSession, project_id: str) -> None:
        current: ProcessingPhase | None = None
        try:
            status = await require_status(session, project_id)
            current = ProcessingPhase(status.status)
            logger.info(
                f"Processing project {project_id}: status {current.value}, "
                f"{status.total_signals} signals"
            )

            if current == ProcessingPhase.COMPLETE:
                logger.info(f"Project {project_id} already processed")
                return
            if current == ProcessingPhase.ERROR:
                current = ProcessingPhase(status.failed_phase or ProcessingPhase.PENDING.value)
                logger.info(f"Resuming project {project_id} from failed phase {current.value}")

            await update_status(session, project_id, started_at=models.utcnow(), completed_at=None)

            resume_from = current
            for phase, runner in self._phases():
                if not phase_is_outstanding(resume_from, phase):
                    continue
                current = phase
                logger.info(f"Starting {phase.value} phase for project {project_id}")
                await update_status(
                    session,
                    project_id,
                    status=phase,
                    error_message=None,
                    failed_phase=None,
                )
                await runner(session, project_id)

            await update_status(
                session,
                project_id,
                status=ProcessingPhase.COMPLETE,
                completed_at=models.utcnow(),
            )
            logger.info(f"Processing complete for project {project_id}")

        except Exception as e:
            logger.error(f"Processing failed for project {project_id}: {e}", exc_info=True)
            await self._record_failure(session, project_id, current, e)

    async def _record_failure(
        self,
        session: AsyncSession,
        project_id: str,
        phase: ProcessingPhase | None,
        error: Exception,
    ) -> None:
        try:
            await session.rollback()
            await update_status(
                session,
                project_id,
                status=ProcessingPhase.ERROR,
                failed_phase=phase.value if phase is not None else None,
                error_message=str(error) or error.__class__.__name__,
            )
        except (ProcessingStateError, SQLAlchemyError) as update_error:
            logger.error(f"Failed to update error status for project {project_id}: {update_error}")

    async def resume(self, project_id: str, *, reset: bool = False) -> None:
        """Resume processing after an error, or from ``pending`` when ``reset`` is set.

        A completed project is left alone unless ``reset`` is given.

        Raises:
            ProcessingStateError: If the project has no processing-state row
        """
        if self.locks.is_locked(project_id):
            await self.run(project_id)
            return

        async with self.session_factory() as session:
            status = await require_status(session, project_id)
            phase = ProcessingPhase(status.status)

            if reset:
                logger.info(f"Resetting processing for project {project_id} to pending")
                await update_status(
                    session,
                    project_id,
                    validate_transition=False,
                    status=ProcessingPhase.PENDING,
                    failed_phase=None,
                    error_message=None,
                    completed_at=None,
                )
            elif phase == ProcessingPhase.COMPLETE:
                logger.info(f"Project {project_id} already complete, nothing to resume")
                return
            elif phase == ProcessingPhase.ERROR:
                target = ProcessingPhase(status.failed_phase or ProcessingPhase.PENDING.value)
                logger.info(f"Clearing error for project {project_id}, resuming at {target.value}")
                await update_status(
                    session,
                    project_id,
                    status=target,
                    failed_phase=None,
                    error_message=None,
                )

        await self.run(project_id)

    def start_in_background(self, project_id: str, *, resume: bool = False, reset: bool = False) -> asyncio.Task:
        """Schedule ``run`` (or ``resume``) without awaiting it."""
        coro = self.resume(project_id, reset=reset) if resume else self.run(project_id)
        task = asyncio.create_task(coro, name=f"process-project-{project_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background processing task {task.get_name()} failed: {error}")

    async def wait_for_background_tasks(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def retry_failed_verifications(self, project_id: str) -> repair.RetryResult:
        """Re-verify signals with an empty verified list under the project lock.

        Raises:
            ProcessingInProgressError: If a processing run holds the lock
            ProcessingStateError: If the project has no processing-state row
        """
        if self.locks.is_locked(project_id):
            raise ProcessingInProgressError(f"Processing already in progress for project {project_id}")

        async with self.locks.get(project_id):
            async with self.session_factory() as session:
                return await repair.retry_failed_verifications(
                    session,
                    project_id,
                    self.claude_client,
                    delay_seconds=self.delay_seconds,
                    min_score=self.config.min_verified_score,
                    sleep=self._sleep,
                )
