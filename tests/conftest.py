"""Shared fixtures.

``FakeTransport`` stands in for :class:`~chatgateway.providers.BedrockTransport`.
It records every call (with the decoded JSON payload) and tracks whether the
stream context was released, so tests can assert on both the wire payload and
resource cleanup without touching AWS.
"""

import json
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import replace
from types import MappingProxyType
from typing import Any

import pytest

from chatgateway.providers import catalog


class FakeTransport:
    """In-memory :class:`~chatgateway.providers.ModelTransport`.

    Args:
        body: Response body returned by :meth:`invoke`.
        chunks: Chunks yielded by the stream opened with :meth:`open_stream`.
        error: Raised by :meth:`invoke` / :meth:`open_stream` before any I/O.
        stream_error: Raised while iterating, after ``fail_after`` chunks.
        fail_after: Number of chunks delivered before ``stream_error``.
    """

    def __init__(
        self,
        body: bytes = b"",
        chunks: Sequence[bytes] = (),
        error: Exception | None = None,
        stream_error: Exception | None = None,
        fail_after: int = 0,
    ) -> None:
        self.body = body
        self.chunks = list(chunks)
        self.error = error
        self.stream_error = stream_error
        self.fail_after = fail_after

        self.invoke_calls: list[tuple[str, dict[str, Any]]] = []
        self.stream_calls: list[tuple[str, dict[str, Any]]] = []
        self.chunks_delivered = 0
        self.stream_closed = False

    @property
    def calls(self) -> int:
        return len(self.invoke_calls) + len(self.stream_calls)

    @property
    def last_payload(self) -> dict[str, Any]:
        return (self.invoke_calls + self.stream_calls)[-1][1]

    async def invoke(self, model_id: str, body: bytes) -> bytes:
        self.invoke_calls.append((model_id, json.loads(body)))
        if self.error is not None:
            raise self.error
        return self.body

    @asynccontextmanager
    async def open_stream(self, model_id: str, body: bytes) -> AsyncIterator[AsyncIterator[bytes]]:
        self.stream_calls.append((model_id, json.loads(body)))
        if self.error is not None:
            raise self.error
        try:
            yield self._iterate()
        finally:
            self.stream_closed = True

    async def _iterate(self) -> AsyncIterator[bytes]:
        for index, chunk in enumerate(self.chunks):
            if self.stream_error is not None and index == self.fail_after:
                raise self.stream_error
            self.chunks_delivered += 1
            yield chunk
        if self.stream_error is not None and self.fail_after >= len(self.chunks):
            raise self.stream_error


def as_chunk(event: dict[str, Any]) -> bytes:
    return json.dumps(event).encode()


@pytest.fixture
def make_transport() -> type[FakeTransport]:
    """Return the :class:`FakeTransport` class so tests can configure instances."""
    return FakeTransport


@pytest.fixture
def chunk() -> Any:
    """Return a helper that serialises a stream event to bytes."""
    return as_chunk


@pytest.fixture
def buffered_opus(monkeypatch) -> Any:
    """Serve ``claude-opus-4-6`` through the buffered invoke path.

    Every shipped catalog entry streams, so the buffered path is exercised by
    swapping in a non-streaming copy of the Opus entry.
    """
    opus = replace(catalog.MODEL_CATALOG["claude-opus-4-6"], supports_streaming=False)
    monkeypatch.setattr(
        catalog,
        "MODEL_CATALOG",
        MappingProxyType({**catalog.MODEL_CATALOG, opus.logical_id: opus}),
    )
    return opus
