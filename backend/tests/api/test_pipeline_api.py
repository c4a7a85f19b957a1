"""Integration tests for the pipeline API endpoints.

Tests cover:
- POST /api/v1/pipeline/{step} success and every error status
- PUT /api/v1/pipeline/results/{record_id} create, overwrite and conflicts
- Structured error bodies with request_id

The Claude client is mocked at the pipeline level.
"""

import json
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from app.integrations.claude import (
    ClaudeAuthError,
    ClaudeMalformedResponseError,
    ClaudeOverloadedError,
    ClaudeRateLimitError,
    ClaudeTimeoutError,
)

ANGLE = {"title": "The quiet rebel", "structure": ["Hook", "Story"]}
ANSWERS = [{"question": "When?", "answer": "Last spring"}]
GENERATE_BODY = {"angle": ANGLE, "answers": ANSWERS, "contentType": "carrousel"}


def set_answer(mock_claude, make_completion, body: dict[str, Any] | str) -> None:
    text = body if isinstance(body, str) else json.dumps(body)
    mock_claude.complete.return_value = make_completion(text)


def assert_error_shape(data: dict[str, Any], code: str) -> None:
    assert data["code"] == code
    assert isinstance(data["error"], str)
    assert "request_id" in data


# ---------------------------------------------------------------------------
# POST /api/v1/pipeline/{step}
# ---------------------------------------------------------------------------


class TestRunStep:
    async def test_generate_success(
        self, async_client: AsyncClient, mock_claude, make_completion
    ) -> None:
        set_answer(
            mock_claude,
            make_completion,
            {"content": "Ready to post", "accroche": "Hook", "format": "carrousel"},
        )

        response = await async_client.post("/api/v1/pipeline/generate", json=GENERATE_BODY)

        assert response.status_code == 200
        data = response.json()
        assert data["step"] == "generate"
        assert data["terminal"] is True
        assert data["result"]["content"] == "Ready to post"
        assert data["quotaRemaining"] == 2
        assert data["quotaRemainingTotal"] == 9
        assert data["contextSections"] == []

    async def test_burst_only_step_has_no_quota(
        self, async_client: AsyncClient, mock_claude, make_completion
    ) -> None:
        set_answer(mock_claude, make_completion, {"content": "Short"})

        response = await async_client.post(
            "/api/v1/pipeline/adjust", json={"content": "Long", "instruction": "shorter"}
        )

        assert response.status_code == 200
        assert response.json()["quotaRemaining"] is None

    async def test_unknown_step(self, async_client: AsyncClient) -> None:
        response = await async_client.post("/api/v1/pipeline/summarize", json={})

        assert response.status_code == 404
        data = response.json()
        assert_error_shape(data, "UNKNOWN_STEP")
        assert "generate" in data["steps"]

    async def test_invalid_input(self, async_client: AsyncClient, mock_claude) -> None:
        response = await async_client.post(
            "/api/v1/pipeline/generate", json={"angle": ANGLE, "answers": []}
        )

        assert response.status_code == 422
        data = response.json()
        assert_error_shape(data, "VALIDATION_ERROR")
        assert data["errors"][0]["field"] == "answers"
        mock_claude.complete.assert_not_called()

    async def test_non_object_body(self, async_client: AsyncClient) -> None:
        response = await async_client.post("/api/v1/pipeline/generate", json=["a"])

        assert response.status_code == 422
        assert_error_shape(response.json(), "VALIDATION_ERROR")

    async def test_quota_exceeded(
        self, async_client: AsyncClient, mock_claude, make_completion
    ) -> None:
        set_answer(mock_claude, make_completion, {"content": "Post"})
        for _ in range(3):
            assert (
                await async_client.post("/api/v1/pipeline/generate", json=GENERATE_BODY)
            ).status_code == 200

        response = await async_client.post("/api/v1/pipeline/generate", json=GENERATE_BODY)

        assert response.status_code == 403
        data = response.json()
        assert_error_shape(data, "QUOTA_EXCEEDED")
        assert data["category"] == "content"
        assert data["plan"] == "free"
        assert data["reason"] == "category"
        assert data["used"] == 3
        assert data["limit"] == 3
        assert "November 1" in data["error"]
        assert data["remaining_total"] == 7

    async def test_total_ceiling_exceeded(
        self, async_client: AsyncClient, mock_claude, seed_usage
    ) -> None:
        await seed_usage("user-1", "total", 10)

        response = await async_client.post("/api/v1/pipeline/generate", json=GENERATE_BODY)

        assert response.status_code == 403
        data = response.json()
        assert_error_shape(data, "QUOTA_EXCEEDED")
        assert data["reason"] == "total"
        assert data["remaining_total"] == 0
        assert "10 AI generations" in data["error"]
        mock_claude.complete.assert_not_called()

    async def test_rate_limited_with_retry_after(
        self, async_client: AsyncClient, mock_claude, make_completion
    ) -> None:
        set_answer(mock_claude, make_completion, {"content": "Short"})
        body = {"content": "Long", "instruction": "shorter"}
        for _ in range(20):
            await async_client.post("/api/v1/pipeline/adjust", json=body)

        response = await async_client.post("/api/v1/pipeline/adjust", json=body)

        assert response.status_code == 429
        assert_error_shape(response.json(), "RATE_LIMIT_EXCEEDED")
        retry_after = int(response.headers["Retry-After"])
        assert 1 <= retry_after <= 60
        assert response.json()["retry_after"] == retry_after

    @pytest.mark.parametrize(
        "error,status_code,code",
        [
            (ClaudeOverloadedError("busy", status_code=529), 503, "PROVIDER_OVERLOADED"),
            (ClaudeAuthError("bad key", status_code=401), 502, "PROVIDER_AUTH"),
            (ClaudeTimeoutError("slow"), 504, "PROVIDER_TIMEOUT"),
            (
                ClaudeMalformedResponseError("Malformed provider response", status_code=200),
                502,
                "PROVIDER_UPSTREAM",
            ),
        ],
    )
    async def test_provider_failures(
        self,
        async_client: AsyncClient,
        mock_claude,
        error: Exception,
        status_code: int,
        code: str,
    ) -> None:
        mock_claude.complete.side_effect = error

        response = await async_client.post(
            "/api/v1/pipeline/questions", json={"angle": ANGLE}
        )

        assert response.status_code == status_code
        assert_error_shape(response.json(), code)

    async def test_provider_rate_limit_forwards_retry_after(
        self, async_client: AsyncClient, mock_claude
    ) -> None:
        mock_claude.complete.side_effect = ClaudeRateLimitError("slow", retry_after=9.0)

        response = await async_client.post(
            "/api/v1/pipeline/questions", json={"angle": ANGLE}
        )

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "9"
        assert response.json()["retryable"] is True

    async def test_malformed_answer(
        self, async_client: AsyncClient, mock_claude, make_completion
    ) -> None:
        set_answer(mock_claude, make_completion, "I would rather not.")

        response = await async_client.post("/api/v1/pipeline/generate", json=GENERATE_BODY)

        assert response.status_code == 502
        data = response.json()
        assert_error_shape(data, "MALFORMED_RESPONSE")
        assert data["raw_text"] == "I would rather not."

    async def test_missing_identity(self, app) -> None:
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.post("/api/v1/pipeline/generate", json=GENERATE_BODY)

        assert response.status_code == 401
        assert_error_shape(response.json(), "UNAUTHORIZED")

    async def test_request_id_echoed(
        self, async_client: AsyncClient, mock_claude, make_completion
    ) -> None:
        response = await async_client.post(
            "/api/v1/pipeline/summarize", json={}, headers={"X-Request-ID": "trace-123"}
        )

        assert response.headers["X-Request-ID"] == "trace-123"
        assert response.json()["request_id"] == "trace-123"


# ---------------------------------------------------------------------------
# PUT /api/v1/pipeline/results/{record_id}
# ---------------------------------------------------------------------------


class TestApplyResult:
    async def test_create_then_update(self, async_client: AsyncClient) -> None:
        body = {"step": "generate", "content": "v1", "format": "carrousel"}

        created = await async_client.put("/api/v1/pipeline/results/draft-1", json=body)
        updated = await async_client.put(
            "/api/v1/pipeline/results/draft-1", json={**body, "content": "v2"}
        )

        assert created.status_code == 201
        assert created.json()["created"] is True
        assert updated.status_code == 200
        data = updated.json()
        assert data["id"] == "draft-1"
        assert data["content"] == "v2"
        assert data["created"] is False

    async def test_other_owner_conflict(self, async_client: AsyncClient) -> None:
        body = {"step": "generate", "content": "mine"}
        await async_client.put("/api/v1/pipeline/results/draft-2", json=body)

        response = await async_client.put(
            "/api/v1/pipeline/results/draft-2", json=body, headers={"X-User-Id": "user-2"}
        )

        assert response.status_code == 409
        assert_error_shape(response.json(), "CONFLICT")

    async def test_unknown_step(self, async_client: AsyncClient) -> None:
        response = await async_client.put(
            "/api/v1/pipeline/results/draft-3", json={"step": "summarize", "content": "x"}
        )

        assert response.status_code == 422
        assert response.json()["errors"][0]["field"] == "step"

    async def test_invalid_record_id(self, async_client: AsyncClient) -> None:
        response = await async_client.put(
            "/api/v1/pipeline/results/bad%20id", json={"step": "generate", "content": "x"}
        )

        assert response.status_code == 422
        assert_error_shape(response.json(), "VALIDATION_ERROR")

    async def test_empty_content_rejected(self, async_client: AsyncClient) -> None:
        response = await async_client.put(
            "/api/v1/pipeline/results/draft-4", json={"step": "generate", "content": ""}
        )

        assert response.status_code == 422
