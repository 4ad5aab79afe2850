"""Per-phase progress counters with batched commits and rate/ETA logging."""
from __future__ import annotations

import logging
import time

from sqlalchemy.ext.asyncio import AsyncSession

from horizon import models
from horizon.state import estimate_seconds_remaining

logger = logging.getLogger(__name__)


class PhaseProgress:
    """Tracks one phase counter on the processing-state row.

    The counter is bumped after every finished item and the session is
    committed every ``commit_interval`` items, so signal rows written by the
    phase and the counter that describes them land in the same transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        status: models.ProcessingStatus,
        counter_field: str,
        *,
        pending: int,
        commit_interval: int,
        phase_name: str,
    ) -> None:
        self.session = session
        self.status = status
        self.counter_field = counter_field
        self.pending = pending
        self.commit_interval = commit_interval
        self.phase_name = phase_name
        self.completed = getattr(status, counter_field) or 0
        self.failures = 0
        self.processed_this_run = 0
        self._since_commit = 0
        self._started = time.monotonic()

    async def advance(self, *, failed: bool = False) -> None:
        total = self.status.total_signals
        self.completed = min(self.completed + 1, total) if total > 0 else self.completed + 1
        self.processed_this_run += 1
        setattr(self.status, self.counter_field, self.completed)
        if failed:
            self.failures += 1
            self.status.claude_verification_failures = (self.status.claude_verification_failures or 0) + 1

        self._since_commit += 1
        if self._since_commit >= self.commit_interval:
            await self.commit()

    async def commit(self) -> None:
        await self.session.commit()
        self._since_commit = 0
        self.log_progress()

    def log_progress(self) -> None:
        elapsed = time.monotonic() - self._started
        remaining = max(self.pending - self.processed_this_run, 0)
        eta = estimate_seconds_remaining(self.processed_this_run, remaining, elapsed)
        rate = self.processed_this_run / elapsed if elapsed > 0 else 0.0
        logger.info(
            f"{self.phase_name} progress: {self.processed_this_run}/{self.pending} this run "
            f"({self.completed}/{self.status.total_signals} overall), "
            f"rate {rate:.2f}/s, eta {eta if eta is not None else '?'}s"
        )
