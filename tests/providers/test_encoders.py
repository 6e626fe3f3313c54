"""Tests for the provider payload encoders."""

import base64

import pytest

from chatgateway.providers import encoders as encoders_module
from chatgateway.providers.catalog import MODEL_CATALOG
from chatgateway.providers.encoders import (
    ANTHROPIC_VERSION,
    EncodeOptions,
    build_llama_prompt,
    encode,
    encoder_for,
)
from chatgateway.providers.errors import UnsupportedProviderError
from chatgateway.providers.models import ConversationMessage, FileAttachment

_OPUS = MODEL_CATALOG["claude-opus-4-6"]
_SONNET = MODEL_CATALOG["claude-sonnet-4"]
_LLAMA = MODEL_CATALOG["llama-4-maverick"]
_DEEPSEEK = MODEL_CATALOG["deepseek-r1"]

_PNG = FileAttachment(
    name="chart.png",
    media_type="image/png",
    data_base64=base64.b64encode(b"\x89PNG").decode(),
    size_bytes=4,
)
_CSV = FileAttachment(
    name="data.csv",
    media_type="text/csv",
    data_base64=base64.b64encode(b"a,b\n1,2").decode(),
    size_bytes=7,
)


def _msg(role: str, content: str, *attachments: FileAttachment) -> ConversationMessage:
    return ConversationMessage(role=role, content=content, attachments=attachments)


_CONVERSATION = [
    _msg("system", "Be brief."),
    _msg("user", "Hi"),
    _msg("assistant", "Hello!"),
    _msg("user", "Bye"),
]


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class TestAnthropicEncoder:
    def test_basic_shape(self) -> None:
        payload = encode(_CONVERSATION, _SONNET, EncodeOptions())
        assert payload["anthropic_version"] == ANTHROPIC_VERSION
        assert payload["max_tokens"] == _SONNET.max_tokens
        assert payload["temperature"] == 0.7
        assert payload["system"] == "Be brief."
        assert payload["messages"] == [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello!"},
            {"role": "user", "content": "Bye"},
        ]
        assert "thinking" not in payload

    def test_options_override_defaults(self) -> None:
        payload = encode(_CONVERSATION, _SONNET, EncodeOptions(temperature=0.2, max_tokens=100))
        assert payload["temperature"] == 0.2
        assert payload["max_tokens"] == 100

    def test_no_system_field_without_system_message(self) -> None:
        payload = encode([_msg("user", "Hi")], _SONNET, EncodeOptions())
        assert "system" not in payload

    def test_mid_conversation_system_messages_dropped(self) -> None:
        messages = [_msg("user", "Hi"), _msg("system", "ignored"), _msg("user", "Again")]
        payload = encode(messages, _SONNET, EncodeOptions())
        assert "system" not in payload
        assert [m["content"] for m in payload["messages"]] == ["Hi", "Again"]

    def test_thinking_enabled_on_supporting_model(self) -> None:
        payload = encode(
            [_msg("user", "Think")], _OPUS, EncodeOptions(enable_thinking=True, temperature=0.3)
        )
        assert payload["thinking"] == {"type": "enabled", "budget_tokens": 4095}
        assert "temperature" not in payload

    def test_thinking_budget_below_max_tokens(self) -> None:
        payload = encode(
            [_msg("user", "Think")],
            _OPUS,
            EncodeOptions(enable_thinking=True, thinking_budget_tokens=1500, max_tokens=2000),
        )
        assert payload["thinking"]["budget_tokens"] == 1500

    @pytest.mark.parametrize(
        ("max_tokens", "budget"), [(500, 5000), (1024, 5000), (4096, 1000)]
    )
    def test_thinking_skipped_below_minimum_budget(
        self, mocker, max_tokens: int, budget: int
    ) -> None:
        log = mocker.patch.object(encoders_module, "_log")
        payload = encode(
            [_msg("user", "Think")],
            _OPUS,
            EncodeOptions(
                enable_thinking=True,
                thinking_budget_tokens=budget,
                max_tokens=max_tokens,
                temperature=0.3,
            ),
        )

        assert "thinking" not in payload
        assert payload["temperature"] == 0.3
        assert payload["max_tokens"] == max_tokens
        log.warning.assert_called_once()
        assert log.warning.call_args.args[0] == "thinking_skipped"

    def test_thinking_at_minimum_budget(self) -> None:
        payload = encode(
            [_msg("user", "Think")],
            _OPUS,
            EncodeOptions(enable_thinking=True, max_tokens=1025),
        )
        assert payload["thinking"]["budget_tokens"] == 1024

    def test_thinking_ignored_on_unsupporting_model(self) -> None:
        payload = encode([_msg("user", "Think")], _SONNET, EncodeOptions(enable_thinking=True))
        assert "thinking" not in payload
        assert payload["temperature"] == 0.7

    def test_image_blocks_precede_text(self) -> None:
        payload = encode([_msg("user", "What is this?", _PNG, _CSV)], _SONNET, EncodeOptions())
        blocks = payload["messages"][0]["content"]
        assert blocks[0] == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/png", "data": _PNG.data_base64},
        }
        assert blocks[1]["type"] == "text"
        assert blocks[1]["text"] == (
            "What is this?\n\n--- File: data.csv ---\na,b\n1,2\n--- End of file: data.csv ---"
        )

    def test_text_attachment_only_stays_a_string(self) -> None:
        payload = encode([_msg("user", "Summarise", _CSV)], _SONNET, EncodeOptions())
        content = payload["messages"][0]["content"]
        assert isinstance(content, str)
        assert "--- File: data.csv ---" in content

    def test_attachment_truncated_to_limit(self) -> None:
        payload = encode(
            [_msg("user", "Read", _CSV)], _SONNET, EncodeOptions(attachment_text_limit=3)
        )
        assert "a,b\n\n[Content truncated...]" in payload["messages"][0]["content"]


# ---------------------------------------------------------------------------
# Meta / Llama
# ---------------------------------------------------------------------------


class TestLlamaEncoder:
    def test_prompt_format(self) -> None:
        prompt = build_llama_prompt(_CONVERSATION, None)
        assert prompt == (
            "<|begin_of_text|>"
            "<|start_header_id|>system<|end_header_id|>\nBe brief.<|eot_id|>"
            "<|start_header_id|>user<|end_header_id|>\nHi<|eot_id|>"
            "<|start_header_id|>assistant<|end_header_id|>\nHello!<|eot_id|>"
            "<|start_header_id|>user<|end_header_id|>\nBye<|eot_id|>"
            "<|start_header_id|>assistant<|end_header_id|>\n"
        )

    def test_payload_defaults(self) -> None:
        payload = encode([_msg("user", "Hi")], _LLAMA, EncodeOptions())
        assert set(payload) == {"prompt", "max_gen_len", "temperature", "top_p"}
        assert payload["max_gen_len"] == 4096
        assert payload["temperature"] == 0.5
        assert payload["top_p"] == 0.9

    def test_options_override_defaults(self) -> None:
        payload = encode([_msg("user", "Hi")], _LLAMA, EncodeOptions(temperature=1.0, max_tokens=50))
        assert payload["max_gen_len"] == 50
        assert payload["temperature"] == 1.0

    def test_attachments_flattened(self) -> None:
        payload = encode([_msg("user", "Look", _PNG, _CSV)], _LLAMA, EncodeOptions())
        assert "[Image attachment: chart.png]" in payload["prompt"]
        assert "--- File: data.csv ---\na,b\n1,2\n--- End of file: data.csv ---" in payload["prompt"]
        assert _PNG.data_base64 not in payload["prompt"]


# ---------------------------------------------------------------------------
# DeepSeek
# ---------------------------------------------------------------------------


class TestDeepSeekEncoder:
    def test_system_becomes_preamble_pair(self) -> None:
        payload = encode(_CONVERSATION, _DEEPSEEK, EncodeOptions())
        assert payload["messages"] == [
            {"role": "user", "content": "[System]: Be brief."},
            {"role": "assistant", "content": "Understood."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello!"},
            {"role": "user", "content": "Bye"},
        ]

    def test_payload_defaults(self) -> None:
        payload = encode([_msg("user", "Hi")], _DEEPSEEK, EncodeOptions())
        assert payload["max_tokens"] == _DEEPSEEK.max_tokens
        assert payload["temperature"] == 0.6
        assert payload["top_p"] == 0.9

    def test_no_system_role_on_the_wire(self) -> None:
        messages = [_msg("user", "Hi"), _msg("system", "late"), _msg("user", "Again")]
        payload = encode(messages, _DEEPSEEK, EncodeOptions())
        assert all(m["role"] != "system" for m in payload["messages"])

    def test_attachments_flattened(self) -> None:
        payload = encode([_msg("user", "Look", _PNG)], _DEEPSEEK, EncodeOptions())
        assert payload["messages"][0]["content"] == "Look\n\n[Image attachment: chart.png]"


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    def test_unknown_provider_raises(self) -> None:
        with pytest.raises(UnsupportedProviderError, match="mistral"):
            encoder_for("mistral")  # type: ignore[arg-type]

    @pytest.mark.parametrize("model_id", sorted(MODEL_CATALOG))
    def test_every_catalog_provider_has_an_encoder(self, model_id: str) -> None:
        payload = encode([_msg("user", "Hi")], MODEL_CATALOG[model_id], EncodeOptions())
        assert isinstance(payload, dict)
