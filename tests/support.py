"""Shared fakes and database helpers for the test suite."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from horizon import models
from horizon.config import EmbeddingSettings, ProcessingSettings
from horizon.db import build_engine, build_session_factory
from horizon.pipelines.orchestrator import ProcessingOrchestrator
from horizon_ai.claude import TrendSummary, VerificationResult

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


@asynccontextmanager
async def database(url: str) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = build_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


async def seed_project(
    factory: async_sessionmaker[AsyncSession],
    texts: Sequence[str],
    *,
    signal_fields: Sequence[dict[str, Any]] | None = None,
    with_status: bool = True,
    **status_fields: Any,
) -> tuple[str, list[str]]:
    """Create a project with one signal per text; returns (project id, signal ids)."""
    async with factory() as session:
        project = models.Project(name="Test project")
        session.add(project)
        await session.flush()

        signals = []
        for i, text in enumerate(texts):
            extra = signal_fields[i] if signal_fields else {}
            created = BASE_TIME + timedelta(seconds=i)
            signals.append(models.Signal(
                project_id=project.id,
                original_text=text,
                created_at=created,
                updated_at=created,
                **extra,
            ))
        session.add_all(signals)

        if with_status:
            fields = {"status": "pending", "total_signals": len(texts)}
            fields.update(status_fields)
            session.add(models.ProcessingStatus(project_id=project.id, **fields))
        await session.commit()
        return project.id, [s.id for s in signals]


async def load_signals(factory: async_sessionmaker[AsyncSession], project_id: str) -> dict[str, models.Signal]:
    async with factory() as session:
        result = await session.execute(
            select(models.Signal)
            .where(models.Signal.project_id == project_id)
            .order_by(models.Signal.created_at)
        )
        return {s.id: s for s in result.scalars()}


async def load_status(factory: async_sessionmaker[AsyncSession], project_id: str) -> models.ProcessingStatus | None:
    async with factory() as session:
        return await session.get(models.ProcessingStatus, project_id)


class FakeEmbedder:
    """Maps text to a fixed vector; texts listed in ``fail`` yield no vector.

    When given, ``started`` is set on the first call and every call waits
    for ``gate`` before answering.
    """

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        *,
        fail: Sequence[str] = (),
        raise_on: Sequence[str] = (),
        default: list[float] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.vectors = vectors or {}
        self.fail = set(fail)
        self.raise_on = set(raise_on)
        self.default = default or [1.0, 0.0, 0.0]
        self.delay = delay
        self.started: asyncio.Event | None = None
        self.gate: asyncio.Event | None = None
        self.calls: list[str] = []

    async def generate(self, text: str) -> list[float] | None:
        self.calls.append(text)
        if self.started is not None:
            self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if text in self.raise_on:
            raise RuntimeError(f"model crashed on {text!r}")
        if text in self.fail:
            return None
        return list(self.vectors.get(text, self.default))


class FakeClaudeClient:
    """Scores every candidate 8 unless a response or error is registered for the focus text."""

    def __init__(
        self,
        responses: dict[str, list[VerificationResult]] | None = None,
        errors: dict[str, BaseException] | None = None,
        summary: TrendSummary | None = None,
    ) -> None:
        self.responses = responses or {}
        self.errors = errors or {}
        self.summary = summary or TrendSummary(title="Remote Work Adoption", summary="Work is moving home.")
        self.verify_calls: list[tuple[str, list[str]]] = []
        self.summary_calls: list[list[str]] = []

    async def verify_similarities(self, focus_text: str, candidate_texts: Sequence[str]) -> list[VerificationResult]:
        self.verify_calls.append((focus_text, list(candidate_texts)))
        if focus_text in self.errors:
            raise self.errors[focus_text]
        if focus_text in self.responses:
            return self.responses[focus_text]
        return [VerificationResult(position=i, score=8) for i in range(1, len(candidate_texts) + 1)]

    async def generate_trend_summary(self, texts: Sequence[str]) -> TrendSummary:
        self.summary_calls.append(list(texts))
        return self.summary


def make_processing_settings(**overrides: Any) -> ProcessingSettings:
    fields = {"rate_limit_delay_ms": 0, "progress_commit_interval": 2}
    fields.update(overrides)
    return ProcessingSettings(**fields)


def make_orchestrator(
    factory: async_sessionmaker[AsyncSession],
    embedder: FakeEmbedder,
    claude: FakeClaudeClient,
    *,
    sleep=None,
    **overrides: Any,
) -> ProcessingOrchestrator:
    kwargs = {"embedding_config": EmbeddingSettings()}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return ProcessingOrchestrator(
        factory,
        embedder,
        claude,
        make_processing_settings(**overrides),
        **kwargs,
    )
