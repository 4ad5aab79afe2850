import asyncio
import json

import httpx
import pytest

from horizon.config import AnthropicSettings
from horizon.pipelines.verification import select_verified
from horizon_ai.claude import (
    ClaudeClient,
    VerificationResult,
    is_fatal_provider_error,
    parse_summary_response,
    parse_verification_response,
)
from horizon_ai.errors import ClaudeAPIError
from horizon_ai.llm_json import extract_json_array, extract_json_object
from horizon_ai.retry import RetryPolicy


def _message(text: str) -> dict:
    return {
        "id": "msg_1",
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": text}],
    }


def _client(handler, *, api_key: str = "test-key", sleep=None) -> ClaudeClient:
    config = AnthropicSettings(api_key=api_key)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=config.base_url)
    kwargs = {"sleep": sleep} if sleep is not None else {}
    return ClaudeClient(
        config,
        http_client=http,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0),
        **kwargs,
    )


class TestJsonExtraction:
    def test_array_inside_prose(self):
        assert extract_json_array('Sure! [{"number": 1, "score": 9}] Hope that helps') == [{"number": 1, "score": 9}]

    def test_array_in_code_fence(self):
        assert extract_json_array('```json\n[{"number": 2, "score": 6}]\n```') == [{"number": 2, "score": 6}]

    def test_skips_malformed_bracket(self):
        assert extract_json_array("[see below] [1, 2]") == [1, 2]

    def test_object(self):
        assert extract_json_object('Result: {"title": "A", "summary": "B"}') == {"title": "A", "summary": "B"}

    def test_nothing_found(self):
        assert extract_json_array("no json here") is None
        assert extract_json_object("") is None


class TestParseVerification:
    def test_invalid_entries_are_dropped(self):
        text = json.dumps([{"position": 1, "score": 9}, {"position": 2, "score": 15}, {"position": 3}])

        assert parse_verification_response(text, 3) == [VerificationResult(position=1, score=9)]

    def test_final_set_drops_scores_below_five(self):
        text = json.dumps([{"number": 1, "score": 9}, {"number": 2, "score": 4}, {"number": 3, "score": 5}])

        results = parse_verification_response(text, 3)
        verified = select_verified(results, ["a", "b", "c"], min_score=5)

        assert [(v.id, v.score) for v in verified] == [("a", 9), ("c", 5)]

    def test_out_of_range_positions(self):
        text = json.dumps([{"number": 0, "score": 9}, {"number": 4, "score": 9}, {"number": 2, "score": 7}])

        assert parse_verification_response(text, 3) == [VerificationResult(position=2, score=7)]

    def test_non_integer_scores(self):
        text = json.dumps([
            {"number": 1, "score": "8"},
            {"number": 2, "score": 7.5},
            {"number": 3, "score": 6.0},
            {"number": 4, "score": True},
        ])

        assert parse_verification_response(text, 4) == [VerificationResult(position=3, score=6)]

    def test_no_array_means_no_matches(self):
        assert parse_verification_response("I could not find any similar signals.", 5) == []

    def test_select_verified_ignores_duplicate_positions(self):
        results = [VerificationResult(1, 9), VerificationResult(1, 6)]

        assert [(v.id, v.score) for v in select_verified(results, ["a"], min_score=5)] == [("a", 9)]


class TestParseSummary:
    def test_json_object(self):
        summary = parse_summary_response('{"title": "Remote Work Adoption", "summary": "Work moves home."}')

        assert summary.title == "Remote Work Adoption"
        assert summary.summary == "Work moves home."

    def test_fallback_first_line_and_remainder(self):
        summary = parse_summary_response("Circular Economy Models Rising Fast\nCompanies reuse materials.\nWaste drops.")

        assert summary.title == "Circular Economy Models"
        assert summary.summary == "Companies reuse materials. Waste drops."

    def test_fallback_single_line_uses_whole_text(self):
        summary = parse_summary_response("Electric Mobility")

        assert summary.title == "Electric Mobility"
        assert summary.summary == "Electric Mobility"

    def test_missing_fields_fall_back(self):
        summary = parse_summary_response('{"title": "", "summary": "Only a summary"}')

        assert summary.title != ""
        assert summary.summary

    def test_length_caps(self):
        text = json.dumps({"title": "T" * 80, "summary": "S" * 900})

        summary = parse_summary_response(text)

        assert len(summary.title) == 50
        assert len(summary.summary) == 500

    def test_empty_text(self):
        summary = parse_summary_response("")

        assert summary.title == ""
        assert summary.summary == ""


class TestFatalClassification:
    def test_auth_and_bad_request_are_fatal(self):
        assert is_fatal_provider_error(ClaudeAPIError("x", status_code=401, error_type="authentication_error"))
        assert is_fatal_provider_error(ClaudeAPIError("x", status_code=400))
        assert is_fatal_provider_error(ClaudeAPIError("x", error_type="permission_error"))

    def test_transient_errors_are_not_fatal(self):
        assert not is_fatal_provider_error(ClaudeAPIError("x", status_code=429))
        assert not is_fatal_provider_error(ClaudeAPIError("x", status_code=529, error_type="overloaded_error"))
        assert not is_fatal_provider_error(httpx.ConnectError("down"))


class TestClaudeClient:
    def test_verify_sends_numbered_candidates(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=_message('[{"number": 2, "score": 8}]'))

        async def scenario():
            client = _client(handler)
            try:
                return await client.verify_similarities("focus", ["first", "second"])
            finally:
                await client._http.aclose()

        results = asyncio.run(scenario())

        assert results == [VerificationResult(position=2, score=8)]
        assert len(requests) == 1
        request = requests[0]
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "test-key"
        assert request.headers["anthropic-version"] == "2023-06-01"
        body = json.loads(request.content)
        assert body["model"] == "claude-sonnet-4-20250514"
        assert body["temperature"] == 0.0
        prompt = body["messages"][0]["content"]
        assert '"focus"' in prompt
        assert "1. first\n2. second" in prompt

    def test_retries_rate_limit_then_succeeds(self, sleeps, fake_sleep):
        responses = [
            httpx.Response(
                429,
                headers={"retry-after": "2"},
                json={"type": "error", "error": {"type": "rate_limit_error", "message": "slow down"}},
            ),
            httpx.Response(200, json=_message('[{"number": 1, "score": 9}]')),
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        async def scenario():
            client = _client(handler, sleep=fake_sleep)
            return await client.verify_similarities("focus", ["candidate"])

        assert asyncio.run(scenario()) == [VerificationResult(position=1, score=9)]
        assert sleeps == [2.0]

    def test_auth_error_is_not_retried(self, sleeps, fake_sleep):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(
                401,
                json={"type": "error", "error": {"type": "authentication_error", "message": "invalid x-api-key"}},
            )

        async def scenario():
            client = _client(handler, sleep=fake_sleep)
            return await client.verify_similarities("focus", ["candidate"])

        with pytest.raises(ClaudeAPIError) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.status_code == 401
        assert exc_info.value.error_type == "authentication_error"
        assert len(calls) == 1
        assert sleeps == []

    def test_no_candidates_makes_no_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        assert asyncio.run(_client(handler).verify_similarities("focus", [])) == []

    def test_missing_api_key(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        with pytest.raises(ClaudeAPIError) as exc_info:
            asyncio.run(_client(handler, api_key="").verify_similarities("focus", ["candidate"]))

        assert is_fatal_provider_error(exc_info.value)

    def test_trend_summary(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["max_tokens"] == 200
            assert "1. signal one" in body["messages"][0]["content"]
            return httpx.Response(200, json=_message('{"title": "Signal Growth", "summary": "Signals grow."}'))

        summary = asyncio.run(_client(handler).generate_trend_summary(["signal one", "signal two"]))

        assert summary.title == "Signal Growth"
        assert summary.summary == "Signals grow."
