"""Trend title/summary generation for a group of related signals."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

from horizon_ai.claude import TrendSummary

if TYPE_CHECKING:
    from horizon_ai.claude import ClaudeClient

logger = logging.getLogger(__name__)

DEFAULT_TREND_TITLE = "Trend"


class EmptyTrendError(ValueError):
    """Raised when a trend summary is requested without any signal text."""
    pass


async def summarize_trend(client: ClaudeClient, texts: Sequence[str]) -> TrendSummary:
    """Summarize related signals, substituting a default title when none came back.

    Raises:
        EmptyTrendError: If no non-empty signal text is given
    """
    cleaned = [text.strip() for text in texts if text and text.strip()]
    if not cleaned:
        raise EmptyTrendError("At least one signal text is required to summarize a trend")

    summary = await client.generate_trend_summary(cleaned)
    if not summary.title.strip():
        logger.warning(f"Empty trend title generated for {len(cleaned)} signals, using default")
        summary = TrendSummary(title=DEFAULT_TREND_TITLE, summary=summary.summary)
    return summary
