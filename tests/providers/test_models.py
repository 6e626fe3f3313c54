"""Tests for request dataclasses (models.py)."""

import base64

import pytest

from chatgateway.providers.errors import InvalidRequestError
from chatgateway.providers.models import ConversationMessage, FileAttachment


def _attachment(text: str, name: str = "notes.txt", media_type: str = "text/plain") -> FileAttachment:
    raw = text.encode()
    return FileAttachment(
        name=name,
        media_type=media_type,
        data_base64=base64.b64encode(raw).decode(),
        size_bytes=len(raw),
    )


class TestConversationMessage:
    @pytest.mark.parametrize("role", ["system", "user", "assistant"])
    def test_valid_roles(self, role: str) -> None:
        assert ConversationMessage(role=role, content="hi").role == role

    def test_invalid_role_raises(self) -> None:
        with pytest.raises(InvalidRequestError, match="invalid role"):
            ConversationMessage(role="tool", content="hi")

    def test_attachments_default_empty(self) -> None:
        assert ConversationMessage(role="user", content="hi").attachments == ()


class TestFileAttachment:
    def test_decoded_text(self) -> None:
        assert _attachment("hello world").decoded_text() == "hello world"

    def test_truncation_marker(self) -> None:
        text = _attachment("abcdefghij").decoded_text(limit=4)
        assert text == "abcd\n\n[Content truncated...]"

    def test_no_truncation_below_limit(self) -> None:
        assert _attachment("abc").decoded_text(limit=3) == "abc"

    def test_invalid_utf8_replaced(self) -> None:
        attachment = FileAttachment(
            name="blob.bin",
            media_type="application/octet-stream",
            data_base64=base64.b64encode(b"ok\xff").decode(),
            size_bytes=3,
        )
        assert attachment.decoded_text() == "ok�"

    def test_is_image(self) -> None:
        assert _attachment("x", name="a.png", media_type="image/png").is_image
        assert not _attachment("x").is_image

    def test_size_mismatch_rejected(self) -> None:
        with pytest.raises(InvalidRequestError, match="declares 99 bytes"):
            FileAttachment(
                name="a.txt",
                media_type="text/plain",
                data_base64=base64.b64encode(b"abc").decode(),
                size_bytes=99,
            )

    def test_invalid_base64_rejected(self) -> None:
        with pytest.raises(InvalidRequestError, match="not valid base64"):
            FileAttachment(name="a.txt", media_type="text/plain", data_base64="@@@", size_bytes=2)
