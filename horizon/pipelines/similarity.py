"""Phase 2: brute-force cosine candidate search.

For each embedded signal without candidates, every *other* signal holding an
embedding at that moment is scored and the top N are stored. Signals embedded
later do not appear retroactively in earlier candidate lists.

Ties keep the pool's iteration order (stable sort, no secondary key).
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import numpy as np
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from horizon import models
from horizon.pipelines.progress import PhaseProgress
from horizon.state import require_status

logger = logging.getLogger(__name__)


class VectorDimensionError(ValueError):
    """Raised when two vectors of different length are compared."""
    pass


@dataclass(frozen=True)
class SimilarityScore:
    """(neighbour id, score) as stored in candidate and verified lists."""
    id: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "score": self.score}

    @classmethod
    def from_dict(cls, data: Any) -> SimilarityScore | None:
        if not isinstance(data, dict) or "id" not in data:
            return None
        score = data.get("score")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            return None
        return cls(id=str(data["id"]), score=score)


def load_scores(raw: Any) -> list[SimilarityScore]:
    """Decode a stored candidate/verified list, skipping malformed entries."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    if not isinstance(raw, list):
        return []
    return [s for s in (SimilarityScore.from_dict(item) for item in raw) if s is not None]


def to_vector(raw: Any) -> np.ndarray | None:
    """Coerce a stored embedding (list, array or JSON text) to a finite 1-D array."""
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return None
    try:
        vector = np.asarray(raw, dtype=float)
    except (TypeError, ValueError):
        return None
    if vector.ndim != 1 or vector.size == 0 or not np.all(np.isfinite(vector)):
        return None
    return vector


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """dot(a, b) / (|a| * |b|), defined as 0.0 when either norm is zero.

    Raises:
        VectorDimensionError: If the vectors differ in length
    """
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise VectorDimensionError(f"Vectors must have the same length ({va.size} != {vb.size})")
    if va.size == 0:
        return 0.0
    denominator = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denominator)


def select_top(scores: Sequence[SimilarityScore], top_n: int) -> list[SimilarityScore]:
    """Highest scores first; equal scores keep their input order."""
    if top_n <= 0:
        return []
    return sorted(scores, key=lambda s: s.score, reverse=True)[:top_n]


class CandidatePool:
    """Embedded signals grouped by dimension for vectorised scoring."""

    def __init__(self, items: Iterable[tuple[str, Sequence[float] | np.ndarray]]) -> None:
        grouped: dict[int, tuple[list[str], list[np.ndarray]]] = {}
        self.size = 0
        for item_id, raw in items:
            vector = to_vector(raw)
            if vector is None:
                logger.error(f"Skipping malformed embedding for signal {item_id}")
                continue
            ids, vectors = grouped.setdefault(vector.size, ([], []))
            ids.append(item_id)
            vectors.append(vector)
            self.size += 1

        self._groups: dict[int, tuple[list[str], np.ndarray, np.ndarray]] = {}
        for dim, (ids, vectors) in grouped.items():
            matrix = np.vstack(vectors)
            self._groups[dim] = (ids, matrix, np.linalg.norm(matrix, axis=1))

    def top_candidates(
        self,
        target: Sequence[float] | np.ndarray,
        top_n: int,
        *,
        exclude_id: str | None = None,
    ) -> list[SimilarityScore]:
        """Top ``top_n`` pool members by descending cosine similarity to ``target``."""
        if top_n <= 0 or self.size == 0:
            return []

        vector = np.asarray(target, dtype=float)
        skipped = sum(
            len(ids) for dim, (ids, _, _) in self._groups.items()
            if dim != vector.size
        )
        if skipped:
            logger.warning(
                f"Skipped {skipped} candidate(s) with mismatched embedding dimension "
                f"(expected {vector.size})"
            )

        group = self._groups.get(vector.size)
        if group is None:
            return []
        ids, matrix, norms = group

        denominators = norms * float(np.linalg.norm(vector))
        dots = matrix @ vector
        sims = np.divide(dots, denominators, out=np.zeros_like(dots), where=denominators != 0)

        scored = [
            SimilarityScore(id=item_id, score=float(sim))
            for item_id, sim in zip(ids, sims)
            if item_id != exclude_id
        ]
        return select_top(scored, top_n)


def find_top_candidates(
    target: Sequence[float] | np.ndarray,
    candidates: Sequence[tuple[str, Sequence[float] | np.ndarray]],
    top_n: int,
) -> list[SimilarityScore]:
    """Top N ``(id, embedding)`` candidates by cosine similarity, highest first.

    Candidates whose dimension differs from ``target`` are logged and skipped.
    """
    if not candidates or top_n <= 0:
        return []
    return CandidatePool(candidates).top_candidates(target, top_n)


async def calculate_embedding_similarities(
    session: AsyncSession,
    project_id: str,
    *,
    top_n: int,
    commit_interval: int,
) -> int:
    """Store top-N embedding candidates for every embedded signal lacking them.

    Returns:
        Number of signals that received a candidate list in this run
    """
    result = await session.execute(
        select(models.Signal)
        .where(
            models.Signal.project_id == project_id,
            models.Signal.embedding.is_not(None),
            models.Signal.embedding_candidates.is_(None),
        )
        .order_by(models.Signal.created_at, models.Signal.id)
    )
    needs_calculation = list(result.scalars().all())

    if not needs_calculation:
        logger.info(f"Phase 2: all similarities already calculated for project {project_id}")
        return 0

    pool_rows = await session.execute(
        select(models.Signal.id, models.Signal.embedding)
        .where(models.Signal.project_id == project_id, models.Signal.embedding.is_not(None))
        .order_by(models.Signal.created_at, models.Signal.id)
    )
    pool = CandidatePool((row.id, row.embedding) for row in pool_rows)

    status = await require_status(session, project_id)
    progress = PhaseProgress(
        session,
        status,
        "embedding_similarities_complete",
        pending=len(needs_calculation),
        commit_interval=commit_interval,
        phase_name="Phase 2 similarities",
    )
    logger.info(
        f"Phase 2: calculating similarities for project {project_id} "
        f"({len(needs_calculation)} signals, pool of {pool.size})"
    )

    calculated = 0
    for signal in needs_calculation:
        vector = to_vector(signal.embedding)
        if vector is None:
            logger.error(f"Failed to parse embedding for signal {signal.id}, skipping")
            continue
        candidates = pool.top_candidates(vector, top_n, exclude_id=signal.id)
        signal.embedding_candidates = [c.to_dict() for c in candidates]
        calculated += 1
        await progress.advance()
    await progress.commit()

    logger.info(f"Phase 2: similarity calculation complete for project {project_id} ({calculated} signals)")
    return calculated
