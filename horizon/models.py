"""Core SQLAlchemy models (2.x style) for projects, signals and processing state.

Embeddings are stored with pgvector on PostgreSQL and as JSON on other
dialects. Candidate and verified-neighbour lists are JSON columns where SQL
NULL means "not computed yet" and ``[]`` is a valid, terminal result.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Python None must be written as SQL NULL so "IS NULL" filters find unprocessed rows
NullableJSON = JSON(none_as_null=True)

EmbeddingVector = Vector().with_variant(JSON(none_as_null=True), "sqlite")


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Project(Base):
    """A horizon-scanning project owning a set of signals."""
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    signals: Mapped[list[Signal]] = relationship("Signal", back_populates="project")
    processing_status: Mapped[ProcessingStatus | None] = relationship(
        "ProcessingStatus",
        back_populates="project",
        uselist=False,
    )


class Signal(Base):
    """An atomic textual observation plus the output of each processing phase."""
    __tablename__ = "signals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    original_text: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float] | None] = mapped_column(EmbeddingVector, nullable=True)
    embedding_candidates: Mapped[list[dict] | None] = mapped_column(NullableJSON, nullable=True)
    similar_signals: Mapped[list[dict] | None] = mapped_column(NullableJSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    project: Mapped[Project] = relationship("Project", back_populates="signals")

    __table_args__ = (
        Index("ix_signals_project_created_at", "project_id", "created_at"),
    )


class ProcessingStatus(Base):
    """Per-project progress counters and pipeline phase."""
    __tablename__ = "processing_status"

    project_id: Mapped[str] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"),
        primary_key=True,
    )
    total_signals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    embeddings_complete: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    embedding_similarities_complete: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    claude_verifications_complete: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    claude_verification_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False, index=True)
    failed_phase: Mapped[str | None] = mapped_column(String(32))
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)

    project: Mapped[Project] = relationship("Project", back_populates="processing_status")
