"""Processing-state model: phases, allowed transitions and status persistence.

The ``processing_status`` row is the only user-visible surface of a run. The
phase moves forward through ``PHASE_ORDER``; ``error`` can be entered from any
non-terminal phase and remembers which phase failed so that a resume
continues there instead of restarting from ``pending``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from horizon import models

logger = logging.getLogger(__name__)


class ProcessingPhase(str, Enum):
    """Pipeline phase persisted in ``processing_status.status``."""
    PENDING = "pending"
    EMBEDDING = "embedding"
    EMBEDDING_SIMILARITY = "embedding_similarity"
    CLAUDE_VERIFICATION = "claude_verification"
    COMPLETE = "complete"
    ERROR = "error"


PHASE_ORDER: tuple[ProcessingPhase, ...] = (
    ProcessingPhase.PENDING,
    ProcessingPhase.EMBEDDING,
    ProcessingPhase.EMBEDDING_SIMILARITY,
    ProcessingPhase.CLAUDE_VERIFICATION,
    ProcessingPhase.COMPLETE,
)

PHASE_LABELS: dict[ProcessingPhase, str] = {
    ProcessingPhase.PENDING: "Pending",
    ProcessingPhase.EMBEDDING: "Generating Embeddings",
    ProcessingPhase.EMBEDDING_SIMILARITY: "Calculating Similarities",
    ProcessingPhase.CLAUDE_VERIFICATION: "Verifying with Claude",
    ProcessingPhase.COMPLETE: "Complete",
    ProcessingPhase.ERROR: "Error",
}

UPDATABLE_FIELDS = frozenset({
    "status",
    "failed_phase",
    "total_signals",
    "embeddings_complete",
    "embedding_similarities_complete",
    "claude_verifications_complete",
    "claude_verification_failures",
    "error_message",
    "started_at",
    "completed_at",
})


class ProcessingError(Exception):
    """Base class for pipeline failures recorded in processing state."""
    pass


class ProcessingStateError(ProcessingError):
    """Raised when the processing-state row is missing or misused."""
    pass


def can_transition(current: ProcessingPhase, target: ProcessingPhase) -> bool:
    """Return True when moving from ``current`` to ``target`` is allowed.

    Forward moves (including staying in place) are allowed between
    non-terminal phases. ``error`` is reachable from any non-terminal phase and
    may be left for any non-terminal phase, which covers both resuming the
    failed phase and an explicit reset to ``pending``.
    """
    if current == ProcessingPhase.COMPLETE:
        return target in (ProcessingPhase.COMPLETE, ProcessingPhase.PENDING)
    if target == ProcessingPhase.ERROR:
        return True
    if current == ProcessingPhase.ERROR:
        return target != ProcessingPhase.COMPLETE
    return PHASE_ORDER.index(target) >= PHASE_ORDER.index(current)


def phase_is_outstanding(current: ProcessingPhase, phase: ProcessingPhase) -> bool:
    """True when ``phase`` still has to run given the persisted ``current`` phase."""
    if current == ProcessingPhase.COMPLETE:
        return False
    return PHASE_ORDER.index(phase) >= PHASE_ORDER.index(current)


async def get_status(session: AsyncSession, project_id: str) -> models.ProcessingStatus | None:
    result = await session.execute(
        select(models.ProcessingStatus).where(models.ProcessingStatus.project_id == project_id)
    )
    return result.scalar_one_or_none()


async def require_status(session: AsyncSession, project_id: str) -> models.ProcessingStatus:
    status = await get_status(session, project_id)
    if status is None:
        raise ProcessingStateError(
            f"Processing status record not found for project {project_id}. "
            "Project may not be initialized."
        )
    return status


async def update_status(
    session: AsyncSession,
    project_id: str,
    *,
    commit: bool = True,
    validate_transition: bool = True,
    **updates: Any,
) -> models.ProcessingStatus:
    """Apply whitelisted field updates to the project's processing state.

    Phase changes are validated against ``can_transition`` unless
    ``validate_transition`` is False, which is reserved for explicit resets.

    Raises:
        ValueError: If an unknown field is passed
        ProcessingStateError: If the row is missing or the transition is invalid
    """
    invalid = sorted(set(updates) - UPDATABLE_FIELDS)
    if invalid:
        raise ValueError(f"Invalid status update fields: {', '.join(invalid)}")

    status = await require_status(session, project_id)

    if "status" in updates:
        target = ProcessingPhase(updates["status"])
        current = ProcessingPhase(status.status)
        if validate_transition and not can_transition(current, target):
            raise ProcessingStateError(
                f"Invalid phase transition for project {project_id}: {current.value} -> {target.value}"
            )
        updates["status"] = target.value

    for field_name, value in updates.items():
        setattr(status, field_name, value)

    if commit:
        await session.commit()
    return status


@dataclass
class ProgressSnapshot:
    """Derived view of a processing-state row for status reporting."""
    status: ProcessingPhase
    total_signals: int
    embeddings_complete: int
    embedding_similarities_complete: int
    claude_verifications_complete: int
    claude_verification_failures: int
    current_phase: str
    percent_complete: int
    estimated_seconds_remaining: int | None
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None


def estimate_seconds_remaining(completed: int, remaining: int, elapsed_seconds: float) -> int | None:
    """ETA from the observed rate (rate = completed / elapsed, ETA = remaining / rate)."""
    if completed <= 0 or elapsed_seconds <= 0:
        return None
    rate = completed / elapsed_seconds
    return round(remaining / rate)


def build_progress_snapshot(
    record: models.ProcessingStatus,
    *,
    now: datetime | None = None,
) -> ProgressSnapshot:
    phase = ProcessingPhase(record.status)
    total_units = record.total_signals * 3
    done_units = (
        record.embeddings_complete
        + record.embedding_similarities_complete
        + record.claude_verifications_complete
    )
    percent = round(min(done_units, total_units) / total_units * 100) if total_units > 0 else 0

    eta = None
    if record.started_at and phase not in (ProcessingPhase.COMPLETE, ProcessingPhase.ERROR):
        now = now or models.utcnow()
        elapsed = (now - record.started_at).total_seconds()
        eta = estimate_seconds_remaining(done_units, max(total_units - done_units, 0), elapsed)

    return ProgressSnapshot(
        status=phase,
        total_signals=record.total_signals,
        embeddings_complete=record.embeddings_complete,
        embedding_similarities_complete=record.embedding_similarities_complete,
        claude_verifications_complete=record.claude_verifications_complete,
        claude_verification_failures=record.claude_verification_failures,
        current_phase=PHASE_LABELS[phase],
        percent_complete=percent,
        estimated_seconds_remaining=eta,
        started_at=record.started_at,
        completed_at=record.completed_at,
        error_message=record.error_message,
    )
