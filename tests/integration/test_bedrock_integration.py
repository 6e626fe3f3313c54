"""Integration tests for the complete gateway flow against AWS Bedrock.

These tests make *real* Bedrock calls and require AWS credentials with model
access in the configured region.  All tests are marked ``integration`` and are
excluded from the default ``pytest`` run.  Run them explicitly:

    # Run only integration tests
    pytest -m integration -v

    # With an explicit profile / region
    AWS_PROFILE=dev AWS_REGION=us-west-2 pytest -m integration -v
"""

# Load .env before any app imports so AWS settings reach os.environ.
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent.parent / ".env", override=True)

import json  # noqa: E402
import os  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from chatgateway.config import settings  # noqa: E402
from chatgateway.main import app, build_gateway  # noqa: E402
from chatgateway.providers import (  # noqa: E402
    ConversationMessage,
    InvocationRequest,
    InvocationResult,
)

# ---------------------------------------------------------------------------
# Module-level integration marker: applied to every test in this file
# ---------------------------------------------------------------------------
pytestmark = pytest.mark.integration

_HAS_AWS = bool(
    os.environ.get("AWS_ACCESS_KEY_ID")
    or os.environ.get("AWS_PROFILE")
    or settings.aws_access_key_id
)

needs_aws = pytest.mark.skipif(
    not _HAS_AWS,
    reason="No AWS credentials configured; skipping Bedrock integration test",
)

_SHORT_PROMPT = [{"role": "user", "content": "Reply with exactly one word: hello"}]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient backed by the real FastAPI app with a live Bedrock gateway."""
    app.state.gateway = build_gateway(settings)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        timeout=httpx.Timeout(connect=10.0, read=60.0, write=10.0, pool=10.0),
    ) as ac:
        yield ac

    if hasattr(app.state, "gateway"):
        del app.state.gateway


def _skip_on_access_error(response: httpx.Response) -> None:
    # Model access is granted per account; a 403/404 is an environment issue.
    if response.status_code in (403, 404):
        pytest.skip(f"Model not accessible: {response.text}")


# ---------------------------------------------------------------------------
# HTTP flow
# ---------------------------------------------------------------------------


@needs_aws
class TestChatEndToEnd:
    @pytest.mark.parametrize("model_id", ["claude-sonnet-4", "llama-4-maverick", "deepseek-r1"])
    async def test_non_streaming(self, client: AsyncClient, model_id: str) -> None:
        response = await client.post(
            "/v1/chat", json={"modelId": model_id, "messages": _SHORT_PROMPT}
        )
        _skip_on_access_error(response)

        assert response.status_code == 200
        body = response.json()
        assert body["content"].strip()
        assert body["model"] == model_id
        assert body["usage"]["inputTokens"] > 0
        assert body["costUSD"] > 0

    @pytest.mark.parametrize("model_id", ["claude-sonnet-4", "llama-4-maverick"])
    async def test_streaming_sse(self, client: AsyncClient, model_id: str) -> None:
        response = await client.post(
            "/v1/chat",
            json={"modelId": model_id, "messages": _SHORT_PROMPT, "stream": True},
        )
        _skip_on_access_error(response)

        assert response.status_code == 200
        data_lines = [
            line[6:]
            for line in response.text.splitlines()
            if line.startswith("data: ") and "[DONE]" not in line
        ]
        events = [json.loads(raw) for raw in data_lines]
        if any("error" in event for event in events):
            pytest.skip(f"Bedrock error during streaming: {events}")

        assert any("content" in event for event in events)
        assert "usage" in events[-1]
        assert response.text.rstrip().endswith("data: [DONE]")

    async def test_thinking_model(self, client: AsyncClient) -> None:
        response = await client.post(
            "/v1/chat",
            json={
                "modelId": "claude-opus-4-6",
                "messages": [{"role": "user", "content": "What is 17 * 23?"}],
                "enableThinking": True,
                "maxTokens": 2048,
            },
        )
        _skip_on_access_error(response)

        assert response.status_code == 200
        body = response.json()
        assert "391" in body["content"]
        assert body["thinking"]


# ---------------------------------------------------------------------------
# Gateway API
# ---------------------------------------------------------------------------


@needs_aws
class TestGatewayDirect:
    async def test_invoke_stream_releases_on_early_close(self) -> None:
        gateway = build_gateway(settings)
        request = InvocationRequest(
            model_id="llama-4-maverick",
            messages=[ConversationMessage(role="user", content="Count from 1 to 50.")],
        )

        stream = gateway.invoke_stream(request)
        first = await anext(stream)
        await stream.aclose()

        assert isinstance(first, str)

    async def test_invoke_result(self) -> None:
        gateway = build_gateway(settings)
        request = InvocationRequest(
            model_id="claude-sonnet-4",
            messages=[
                ConversationMessage(role="system", content="Answer in one word."),
                ConversationMessage(role="user", content="Capital of France?"),
            ],
        )
        result = await gateway.invoke(request)

        assert isinstance(result, InvocationResult)
        assert "paris" in result.content.lower()
        assert result.usage.output_tokens > 0
