"""Re-verification of signals whose Claude verification came back empty.

An empty verified list is ambiguous: it is stored both for "Claude found no
matches" and for "verification failed". Every such row with a non-empty
candidate list is retried; a row is only overwritten when the new result
actually contains matches.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from horizon import models
from horizon.pipelines.similarity import load_scores
from horizon.pipelines.verification import load_texts, verify_signal
from horizon.state import update_status

if TYPE_CHECKING:
    from horizon_ai.claude import ClaudeClient

logger = logging.getLogger(__name__)


@dataclass
class RetryResult:
    retried_count: int
    succeeded_count: int


def _needs_retry(signal: models.Signal) -> bool:
    return signal.similar_signals == [] and bool(load_scores(signal.embedding_candidates))


async def _count_failed(session: AsyncSession, project_id: str) -> int:
    result = await session.execute(
        select(models.Signal).where(
            models.Signal.project_id == project_id,
            models.Signal.similar_signals.is_not(None),
        )
    )
    return sum(1 for signal in result.scalars() if _needs_retry(signal))


async def retry_failed_verifications(
    session: AsyncSession,
    project_id: str,
    client: ClaudeClient,
    *,
    delay_seconds: float,
    min_score: int,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryResult:
    """Retry every signal with an empty verified list and non-empty candidates.

    Runs one signal at a time with ``delay_seconds`` between calls. Per-item
    errors are logged and the row is left as it was. The failure counter is
    recomputed from the rows that still match afterwards.
    """
    result = await session.execute(
        select(models.Signal)
        .where(
            models.Signal.project_id == project_id,
            models.Signal.similar_signals.is_not(None),
        )
        .order_by(models.Signal.created_at, models.Signal.id)
    )
    failed = [signal for signal in result.scalars().all() if _needs_retry(signal)]

    if not failed:
        logger.info(f"No failed verifications to retry for project {project_id}")
        await update_status(session, project_id, claude_verification_failures=0)
        return RetryResult(retried_count=0, succeeded_count=0)

    logger.info(f"Retrying {len(failed)} failed verifications for project {project_id}")

    succeeded = 0
    for index, signal in enumerate(failed):
        candidates = load_scores(signal.embedding_candidates)
        try:
            texts_by_id = await load_texts(session, project_id, (c.id for c in candidates))
            verified = await verify_signal(client, signal.original_text, candidates, texts_by_id, min_score)
        except Exception as e:
            logger.error(f"Retry failed for signal {signal.id}: {e}")
            verified = []

        if verified:
            signal.similar_signals = [score.to_dict() for score in verified]
            await session.commit()
            succeeded += 1
            logger.info(f"Signal {signal.id} now has {len(verified)} verified matches")

        if delay_seconds > 0 and index < len(failed) - 1:
            await sleep(delay_seconds)

    remaining = await _count_failed(session, project_id)
    await update_status(session, project_id, claude_verification_failures=remaining)

    logger.info(
        f"Verification retry complete for project {project_id}: "
        f"{succeeded}/{len(failed)} succeeded, {remaining} still empty"
    )
    return RetryResult(retried_count=len(failed), succeeded_count=succeeded)
