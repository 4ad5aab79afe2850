"""Phase 1: embedding generation for signals without a vector.

Resumable: only rows with a NULL embedding are selected. A failed embedding
is recorded as "attempted, no vector" (the row stays NULL and the counter
still advances); it is picked up again on the next run, never within the
same one.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Sequence, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from horizon import models
from horizon.pipelines.progress import PhaseProgress
from horizon.state import require_status

if TYPE_CHECKING:
    from horizon_ai.embeddings import EmbeddingGenerator

logger = logging.getLogger(__name__)

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> list[Sequence[T]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def truncate_text(text: str, max_length: int) -> str:
    """Cut text to ``max_length`` characters, a proxy for model token limits."""
    return text[:max_length] if len(text) > max_length else text


async def _embed_one(generator: EmbeddingGenerator, signal_id: str, text: str, max_length: int) -> list[float] | None:
    try:
        return await generator.generate(truncate_text(text, max_length))
    except Exception as e:
        logger.error(f"Failed to generate embedding for signal {signal_id}: {e}")
        return None


async def generate_embeddings(
    session: AsyncSession,
    project_id: str,
    generator: EmbeddingGenerator,
    *,
    concurrency: int,
    max_text_length: int,
    commit_interval: int,
) -> int:
    """Embed every signal of the project that has no vector yet.

    Returns:
        Number of signals that received a vector in this run
    """
    result = await session.execute(
        select(models.Signal)
        .where(models.Signal.project_id == project_id, models.Signal.embedding.is_(None))
        .order_by(models.Signal.created_at, models.Signal.id)
    )
    signals = list(result.scalars().all())

    if not signals:
        logger.info(f"Phase 1: all embeddings already generated for project {project_id}")
        return 0

    status = await require_status(session, project_id)
    progress = PhaseProgress(
        session,
        status,
        "embeddings_complete",
        pending=len(signals),
        commit_interval=commit_interval,
        phase_name="Phase 1 embeddings",
    )
    logger.info(
        f"Phase 1: starting embedding generation for project {project_id} "
        f"({len(signals)} remaining, concurrency {concurrency})"
    )

    embedded = 0
    for batch in chunked(signals, concurrency):
        vectors = await asyncio.gather(
            *(_embed_one(generator, s.id, s.original_text, max_text_length) for s in batch)
        )
        for signal, vector in zip(batch, vectors):
            if vector is not None and len(vector) > 0:
                signal.embedding = vector
                embedded += 1
            else:
                logger.warning(f"Generated embedding is null for signal {signal.id}")
            await progress.advance()
        await progress.commit()

    logger.info(
        f"Phase 1: embedding generation complete for project {project_id} "
        f"({embedded}/{len(signals)} embedded)"
    )
    return embedded
