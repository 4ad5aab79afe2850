"""Phase 3: Claude verification of embedding candidates.

Resumable: only signals with candidates and a NULL verified list are
selected. Each signal is one Claude request listing its resolvable
candidates by position. Scores below ``min_score`` are dropped.

Failure handling per item: a provider error left over after the retry
policy counts as a verification failure, stores ``[]`` and does not stop the
batch. Auth failures and malformed requests are not item-specific and abort
the phase so the orchestrator can record them.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from horizon import models
from horizon.pipelines.embedding import chunked
from horizon.pipelines.progress import PhaseProgress
from horizon.pipelines.similarity import SimilarityScore, load_scores
from horizon.state import require_status
from horizon_ai.claude import VerificationResult, is_fatal_provider_error

if TYPE_CHECKING:
    from horizon_ai.claude import ClaudeClient

logger = logging.getLogger(__name__)


def select_verified(
    results: Iterable[VerificationResult],
    candidate_ids: Sequence[str],
    min_score: int,
) -> list[SimilarityScore]:
    """Map 1-based positions back to signal ids and keep scores >= ``min_score``."""
    verified: list[SimilarityScore] = []
    seen: set[str] = set()
    for result in results:
        if not 1 <= result.position <= len(candidate_ids):
            continue
        if result.score < min_score:
            continue
        candidate_id = candidate_ids[result.position - 1]
        if candidate_id in seen:
            continue
        seen.add(candidate_id)
        verified.append(SimilarityScore(id=candidate_id, score=result.score))
    return verified


async def load_texts(session: AsyncSession, project_id: str, signal_ids: Iterable[str]) -> dict[str, str]:
    ids = sorted(set(signal_ids))
    if not ids:
        return {}
    result = await session.execute(
        select(models.Signal.id, models.Signal.original_text).where(
            models.Signal.project_id == project_id,
            models.Signal.id.in_(ids),
        )
    )
    return {row.id: row.original_text for row in result}


async def verify_signal(
    client: ClaudeClient,
    focus_text: str,
    candidates: Sequence[SimilarityScore],
    texts_by_id: dict[str, str],
    min_score: int,
) -> list[SimilarityScore]:
    """Verify one signal's candidates; unresolvable candidates are dropped.

    Returns ``[]`` without calling Claude when no candidate text resolves.
    """
    resolved = [(c.id, texts_by_id[c.id]) for c in candidates if texts_by_id.get(c.id)]
    if not resolved:
        return []
    results = await client.verify_similarities(focus_text, [text for _, text in resolved])
    return select_verified(results, [candidate_id for candidate_id, _ in resolved], min_score)


async def verify_candidates(
    session: AsyncSession,
    project_id: str,
    client: ClaudeClient,
    *,
    concurrency: int,
    delay_seconds: float,
    min_score: int,
    commit_interval: int,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> int:
    """Verify every signal with candidates but no verified list.

    Returns:
        Number of per-item verification failures in this run

    Raises:
        ClaudeAPIError: On an auth failure or malformed request, after the
            rest of the current batch has been persisted
    """
    result = await session.execute(
        select(models.Signal)
        .where(
            models.Signal.project_id == project_id,
            models.Signal.embedding_candidates.is_not(None),
            models.Signal.similar_signals.is_(None),
        )
        .order_by(models.Signal.created_at, models.Signal.id)
    )
    signals = list(result.scalars().all())

    if not signals:
        logger.info(f"Phase 3: all signals already verified for project {project_id}")
        return 0

    status = await require_status(session, project_id)
    progress = PhaseProgress(
        session,
        status,
        "claude_verifications_complete",
        pending=len(signals),
        commit_interval=commit_interval,
        phase_name="Phase 3 verification",
    )
    logger.info(
        f"Phase 3: starting Claude verification for project {project_id} "
        f"({len(signals)} signals, concurrency {concurrency})"
    )

    batches = chunked(signals, concurrency)
    for batch_index, batch in enumerate(batches):
        candidates_by_signal = {s.id: load_scores(s.embedding_candidates) for s in batch}
        texts_by_id = await load_texts(
            session,
            project_id,
            (c.id for candidates in candidates_by_signal.values() for c in candidates),
        )

        outcomes = await asyncio.gather(
            *(
                verify_signal(client, s.original_text, candidates_by_signal[s.id], texts_by_id, min_score)
                for s in batch
            ),
            return_exceptions=True,
        )

        fatal_error: BaseException | None = None
        for signal, outcome in zip(batch, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                if is_fatal_provider_error(outcome):
                    # Left unverified so a resumed run picks it up again
                    fatal_error = fatal_error or outcome
                    continue
                logger.error(f"Claude verification failed for signal {signal.id}: {outcome}")
                signal.similar_signals = []
                await progress.advance(failed=True)
                continue

            signal.similar_signals = [score.to_dict() for score in outcome]
            logger.debug(f"Signal {signal.id} verified with {len(outcome)} similar signals")
            await progress.advance()

        await progress.commit()
        if fatal_error is not None:
            raise fatal_error

        if delay_seconds > 0 and batch_index < len(batches) - 1:
            await sleep(delay_seconds)

    if progress.failures:
        logger.warning(f"Phase 3: {progress.failures} Claude verifications failed for project {project_id}")
    return progress.failures
