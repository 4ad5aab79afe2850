"""FastAPI app exposing project import, background processing and trend summaries.

Processing runs in the API process: importing signals schedules a background
``ProcessingOrchestrator.run`` and clients poll the processing-status endpoint.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from horizon_ai.claude import ClaudeClient
from horizon_ai.errors import ClaudeAPIError

from . import models
from .config import settings
from .db import AsyncSessionMaker, get_session
from .logging_config import setup_logging
from .pipelines.orchestrator import ProcessingInProgressError, ProcessingOrchestrator
from .pipelines.trends import EmptyTrendError, summarize_trend
from .state import (
    ProcessingPhase,
    ProcessingStateError,
    build_progress_snapshot,
    get_status,
    update_status,
)

logger = logging.getLogger(__name__)


# Pydantic request/response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class CreateProjectRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class ProjectResponse(BaseModel):
    id: str
    name: str
    created_at: datetime


class ImportSignalsRequest(BaseModel):
    """Bulk signal import; blank texts are ignored."""
    signals: list[str] = Field(min_length=1)


class ImportSignalsResponse(BaseModel):
    project_id: str
    imported: int
    total_signals: int
    processing_started: bool


class ProcessingStatusResponse(BaseModel):
    """Processing state with derived progress."""
    project_id: str
    status: str
    total_signals: int
    embeddings_complete: int
    embedding_similarities_complete: int
    claude_verifications_complete: int
    claude_verification_failures: int
    current_phase: str
    percent_complete: int
    estimated_seconds_remaining: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None


class ProcessingAcceptedResponse(BaseModel):
    project_id: str
    message: str


class RetryVerificationsResponse(BaseModel):
    project_id: str
    retried_count: int
    succeeded_count: int


class TrendSummaryRequest(BaseModel):
    signals: list[str] = Field(min_length=1)


class TrendSummaryResponse(BaseModel):
    title: str
    summary: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    logger.info("Application starting up")

    # Model weights load lazily on first use, not here
    from horizon_ai.embeddings import EmbeddingGenerator

    claude_client = ClaudeClient()
    app.state.orchestrator = ProcessingOrchestrator(
        AsyncSessionMaker,
        EmbeddingGenerator(),
        claude_client,
    )

    yield

    # Shutdown
    logger.info("Application shutting down")
    await claude_client.aclose()


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Signal import, resumable similarity processing and trend summaries",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],  # Frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_orchestrator(request: Request) -> ProcessingOrchestrator:
    return request.app.state.orchestrator


# Exception handlers
@app.exception_handler(ProcessingStateError)
async def processing_state_error_handler(request, exc: ProcessingStateError):
    """Handle missing or inconsistent processing state."""
    logger.error(f"Processing state error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=ErrorResponse(
            error="processing_state_error",
            detail=str(exc),
        ).model_dump(),
    )


@app.exception_handler(ProcessingInProgressError)
async def processing_in_progress_handler(request, exc: ProcessingInProgressError):
    """Handle operations that collide with a running pipeline."""
    logger.warning(f"Processing in progress: {exc}")
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=ErrorResponse(
            error="processing_in_progress",
            detail=str(exc),
        ).model_dump(),
    )


@app.exception_handler(ClaudeAPIError)
async def claude_error_handler(request, exc: ClaudeAPIError):
    """Handle Anthropic API failures that survived the retry policy."""
    logger.error(f"Claude API error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content=ErrorResponse(
            error="claude_api_error",
            detail=str(exc),
        ).model_dump(),
    )


async def _require_project(session: AsyncSession, project_id: str) -> models.Project:
    project = await session.get(models.Project, project_id)
    if project is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project {project_id} not found",
        )
    return project


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        version=settings.version,
    )


@app.post(
    "/projects",
    response_model=ProjectResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_project(
    request: CreateProjectRequest,
    session: AsyncSession = Depends(get_session),
) -> ProjectResponse:
    """Create a project together with its processing-state row."""
    project = models.Project(name=request.name.strip())
    session.add(project)
    await session.flush()
    session.add(models.ProcessingStatus(project_id=project.id, total_signals=0))
    await session.commit()

    logger.info(f"Created project {project.id}: {project.name}")
    return ProjectResponse(id=project.id, name=project.name, created_at=project.created_at)


@app.post(
    "/projects/{project_id}/signals",
    response_model=ImportSignalsResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def import_signals(
    project_id: str,
    request: ImportSignalsRequest,
    session: AsyncSession = Depends(get_session),
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
) -> ImportSignalsResponse:
    """Import signal texts and start background processing.

    New rows have no embedding, so they are picked up by every phase. The
    persisted phase is reset to ``pending`` unless a run currently holds the
    project lock. Once the rows are committed a rerun is requested, so
    whichever run holds the lock next (or still holds it) starts over from
    ``pending`` and embeds them.
    """
    await _require_project(session, project_id)
    texts = [text.strip() for text in request.signals if text and text.strip()]
    if not texts:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No non-empty signal texts provided",
        )

    session.add_all(models.Signal(project_id=project_id, original_text=text) for text in texts)

    record = await get_status(session, project_id)
    if record is None:
        record = models.ProcessingStatus(project_id=project_id, total_signals=0)
        session.add(record)
        await session.flush()

    updates: dict = {"total_signals": record.total_signals + len(texts)}
    if not orchestrator.locks.is_locked(project_id):
        updates.update(
            status=ProcessingPhase.PENDING,
            failed_phase=None,
            error_message=None,
            completed_at=None,
        )
    await update_status(session, project_id, validate_transition=False, **updates)
    orchestrator.locks.request_rerun(project_id)

    logger.info(f"Imported {len(texts)} signals into project {project_id}")
    orchestrator.start_in_background(project_id)

    return ImportSignalsResponse(
        project_id=project_id,
        imported=len(texts),
        total_signals=updates["total_signals"],
        processing_started=True,
    )


@app.get(
    "/projects/{project_id}/processing-status",
    response_model=ProcessingStatusResponse,
)
async def processing_status(
    project_id: str,
    session: AsyncSession = Depends(get_session),
) -> ProcessingStatusResponse:
    """Current phase, counters, percent complete and ETA."""
    record = await get_status(session, project_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Processing status not found for project {project_id}",
        )

    snapshot = build_progress_snapshot(record)
    return ProcessingStatusResponse(
        project_id=project_id,
        status=snapshot.status.value,
        total_signals=snapshot.total_signals,
        embeddings_complete=snapshot.embeddings_complete,
        embedding_similarities_complete=snapshot.embedding_similarities_complete,
        claude_verifications_complete=snapshot.claude_verifications_complete,
        claude_verification_failures=snapshot.claude_verification_failures,
        current_phase=snapshot.current_phase,
        percent_complete=snapshot.percent_complete,
        estimated_seconds_remaining=snapshot.estimated_seconds_remaining,
        started_at=snapshot.started_at,
        completed_at=snapshot.completed_at,
        error_message=snapshot.error_message,
    )


@app.post(
    "/projects/{project_id}/resume-processing",
    response_model=ProcessingAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def resume_processing(
    project_id: str,
    reset: bool = False,
    session: AsyncSession = Depends(get_session),
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
) -> ProcessingAcceptedResponse:
    """Resume an errored or interrupted run in the background."""
    if await get_status(session, project_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Processing status not found for project {project_id}",
        )

    orchestrator.start_in_background(project_id, resume=True, reset=reset)
    return ProcessingAcceptedResponse(
        project_id=project_id,
        message="Processing reset and restarted" if reset else "Processing resumed",
    )


@app.post(
    "/projects/{project_id}/retry-verifications",
    response_model=RetryVerificationsResponse,
)
async def retry_verifications(
    project_id: str,
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
) -> RetryVerificationsResponse:
    """Re-verify signals whose verification came back empty."""
    result = await orchestrator.retry_failed_verifications(project_id)
    return RetryVerificationsResponse(
        project_id=project_id,
        retried_count=result.retried_count,
        succeeded_count=result.succeeded_count,
    )


@app.post("/trends/summary", response_model=TrendSummaryResponse)
async def trend_summary(
    request: TrendSummaryRequest,
    orchestrator: ProcessingOrchestrator = Depends(get_orchestrator),
) -> TrendSummaryResponse:
    """Generate a short title and summary for a group of related signals."""
    try:
        summary = await summarize_trend(orchestrator.claude_client, request.signals)
    except EmptyTrendError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )
    return TrendSummaryResponse(title=summary.title, summary=summary.summary)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "create_project": "/projects",
            "import_signals": "/projects/{project_id}/signals",
            "processing_status": "/projects/{project_id}/processing-status",
            "resume_processing": "/projects/{project_id}/resume-processing",
            "retry_verifications": "/projects/{project_id}/retry-verifications",
            "trend_summary": "/trends/summary",
            "docs": "/docs",
        },
    }
