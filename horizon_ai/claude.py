"""Claude client for similarity verification and trend summaries.

Thin wrapper around the Anthropic Messages API over ``httpx``. One place for
auth headers, error normalization, retries and response parsing. Both public
operations go through the same retry engine (``horizon_ai.retry``).

Parsing is best effort on purpose: a response without usable JSON becomes an
empty verification result or a heuristic summary, never an exception.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

import httpx

from horizon.config import AnthropicSettings, settings

from .errors import ClaudeAPIError
from .llm_json import extract_json_array, extract_json_object
from .retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

MIN_SCORE = 1
MAX_SCORE = 10
TITLE_MAX_WORDS = 3
TITLE_MAX_CHARS = 50
SUMMARY_MAX_CHARS = 500

FATAL_ERROR_TYPES = frozenset({
    "authentication_error",
    "permission_error",
    "invalid_request_error",
    "not_found_error",
})
FATAL_STATUS_CODES = frozenset({400, 401, 403, 404})


@dataclass(frozen=True)
class VerificationResult:
    """One scored candidate, ``position`` is 1-based in the prompt's list."""
    position: int
    score: int


@dataclass(frozen=True)
class TrendSummary:
    title: str
    summary: str


def is_fatal_provider_error(error: BaseException) -> bool:
    """Auth failures and malformed requests abort the phase instead of one item."""
    if not isinstance(error, ClaudeAPIError):
        return False
    return error.status_code in FATAL_STATUS_CODES or error.error_type in FATAL_ERROR_TYPES


VERIFICATION_PROMPT = """You are helping identify similar signals in a foresight/horizon scanning project. Signals are observations about emerging changes, trends, or developments.

FOCUS SIGNAL:
"{focus}"

CANDIDATE SIGNALS (identified as potentially similar by initial screening):
{candidates}

TASK:
Evaluate each candidate for semantic similarity to the focus signal. Two signals are similar if they:
- Describe the same underlying trend or phenomenon
- Would logically be grouped together when identifying patterns
- Represent different facets or examples of the same development

Even if signals use completely different words, they should be marked as similar if they point to the same underlying trend.

SCORING:
- 9-10: Nearly identical trend, clearly the same phenomenon
- 7-8: Strongly related, same underlying development
- 5-6: Moderately related, overlapping themes, could be grouped
- 3-4: Loosely related, tangential connection
- 1-2: Minimal connection, probably not the same trend

Return a JSON array of objects with "number" (candidate number) and "score" (1-10).
Only include candidates that score 5 or higher.
Return ONLY the JSON array, no other text.

Example: [{{"number": 1, "score": 9}}, {{"number": 5, "score": 7}}, {{"number": 12, "score": 5}}]"""


SUMMARY_PROMPT = """You are helping identify trends from a collection of signals (observations about change) in a foresight/horizon scanning project.

The following signals have been identified as related. Generate:
1. A short title (1-3 words) that describes what is changing and how it's changing
2. A concise summary (2-3 sentences) that describes the underlying pattern

SIGNALS:
{signals}

REQUIREMENTS FOR TITLE:
- Exactly 1-3 words (prefer 2-3 words)
- Describe what is changing and how it's changing
- WHERE POSSIBLE, use words from the original signal descriptions
- Use title case (capitalize important words)
- Examples: "Subscription Economy Growth", "Remote Work Adoption", "Circular Economy Models"

REQUIREMENTS FOR SUMMARY:
- Write exactly 2-3 sentences
- Maximum 65 words
- Focus on the underlying trend, not the individual signals
- Use present tense
- Describe the CHANGE that is happening, NOT its implications or consequences
- Be specific and factual about the change itself

IMPORTANT: Return ONLY a valid JSON object with "title" and "summary" fields. No other text before or after the JSON.
Example format:
{{
  "title": "Subscription Economy Growth",
  "summary": "Businesses are shifting from ownership to access-based models. Companies are offering subscription services across multiple industries including software, transportation, and consumer goods."
}}"""


def _numbered(texts: Sequence[str]) -> str:
    return "\n".join(f"{i}. {text}" for i, text in enumerate(texts, start=1))


def _as_int(value: object) -> int | None:
    """Accept ints and integral floats; reject bools, strings and fractions."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def parse_verification_response(text: str, candidate_count: int) -> list[VerificationResult]:
    """Extract valid ``{number, score}`` entries from a verification response.

    Entries with an out-of-range position or a score that is not an integer in
    [1, 10] are dropped. No JSON array at all means "no matches".
    """
    parsed = extract_json_array(text)
    if parsed is None:
        logger.warning(f"Claude returned non-JSON verification response: {text[:200]!r}")
        return []

    results: list[VerificationResult] = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        position = _as_int(item.get("number", item.get("position")))
        score = _as_int(item.get("score"))
        if position is None or score is None:
            continue
        if not 1 <= position <= candidate_count:
            continue
        if not MIN_SCORE <= score <= MAX_SCORE:
            continue
        results.append(VerificationResult(position=position, score=score))

    if len(results) != len(parsed):
        logger.warning(
            f"Some Claude verification results were invalid (total {len(parsed)}, valid {len(results)})"
        )
    return results


def parse_summary_response(text: str) -> TrendSummary:
    """Parse ``{title, summary}``; fall back to first-line/remainder extraction."""
    text = (text or "").strip()
    parsed = extract_json_object(text)
    if parsed is not None:
        title = parsed.get("title")
        summary = parsed.get("summary")
        if isinstance(title, str) and isinstance(summary, str) and title.strip() and summary.strip():
            return TrendSummary(
                title=title.strip()[:TITLE_MAX_CHARS],
                summary=summary.strip()[:SUMMARY_MAX_CHARS],
            )
        logger.warning(f"Generated JSON missing title or summary, falling back to text extraction: {text[:500]!r}")
    else:
        logger.warning(f"Failed to parse trend generation JSON, falling back to text extraction: {text[:500]!r}")

    lines = [line.strip() for line in text.splitlines() if line.strip()]
    title = " ".join(lines[0].split()[:TITLE_MAX_WORDS]) if lines else ""
    summary = " ".join(lines[1:]).strip() or text
    return TrendSummary(title=title[:TITLE_MAX_CHARS], summary=summary[:SUMMARY_MAX_CHARS])


def _error_from_response(response: httpx.Response) -> ClaudeAPIError:
    error_type = None
    message = response.text[:500]
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error_type = body["error"].get("type")
        message = body["error"].get("message") or message
    return ClaudeAPIError(
        f"Anthropic request failed: {message}",
        status_code=response.status_code,
        error_type=error_type,
        headers=dict(response.headers),
    )


class ClaudeClient:
    """Async Claude client with retrying verification and summary calls."""

    def __init__(
        self,
        config: AnthropicSettings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or settings.anthropic
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.config)
        self._sleep = sleep
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def complete(self, prompt: str, *, max_tokens: int, temperature: float) -> str:
        """Single Messages API call; returns the concatenated text blocks.

        Raises:
            ClaudeAPIError: On an error response or a missing API key
            httpx.TransportError: On network failures
        """
        if not self.config.api_key:
            raise ClaudeAPIError(
                "ANTHROPIC_API_KEY is not configured",
                status_code=401,
                error_type="authentication_error",
            )

        response = await self._http.post(
            "/messages",
            headers={
                "x-api-key": self.config.api_key,
                "anthropic-version": self.config.api_version,
                "content-type": "application/json",
            },
            json={
                "model": self.config.model,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "messages": [{"role": "user", "content": prompt}],
            },
        )
        if response.status_code >= 400:
            raise _error_from_response(response)

        data = response.json()
        if data.get("type") == "error" and isinstance(data.get("error"), dict):
            raise ClaudeAPIError(
                f"Anthropic request failed: {data['error'].get('message')}",
                status_code=response.status_code,
                error_type=data["error"].get("type"),
                headers=dict(response.headers),
            )
        parts = [
            str(block.get("text") or "")
            for block in data.get("content", [])
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(parts).strip()

    async def _complete_with_retry(self, prompt: str, *, max_tokens: int, temperature: float, operation: str) -> str:
        return await with_retry(
            lambda: self.complete(prompt, max_tokens=max_tokens, temperature=temperature),
            self.retry_policy,
            sleep=self._sleep,
            operation=operation,
        )

    async def verify_similarities(self, focus_text: str, candidate_texts: Sequence[str]) -> list[VerificationResult]:
        """Score each candidate against the focus signal (1-10).

        Returns an empty list for no candidates without calling the API.
        Provider errors propagate after the retry policy is exhausted.
        """
        if not candidate_texts:
            return []

        prompt = VERIFICATION_PROMPT.format(focus=focus_text, candidates=_numbered(candidate_texts))
        text = await self._complete_with_retry(
            prompt,
            max_tokens=self.config.verification_max_tokens,
            temperature=0.0,
            operation="Claude verification",
        )
        return parse_verification_response(text, len(candidate_texts))

    async def generate_trend_summary(self, texts: Sequence[str]) -> TrendSummary:
        """Generate a 1-3 word title and 2-3 sentence summary for related signals."""
        prompt = SUMMARY_PROMPT.format(signals=_numbered(texts))
        text = await self._complete_with_retry(
            prompt,
            max_tokens=self.config.summary_max_tokens,
            temperature=self.config.summary_temperature,
            operation="Claude trend summary",
        )
        return parse_summary_response(text)
