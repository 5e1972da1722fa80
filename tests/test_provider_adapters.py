"""Tests for provider wire-format adapters."""

from __future__ import annotations

import json

import pytest

from skillkernel.service.errors import ProviderError
from skillkernel.service.providers.anthropic import AnthropicAdapter
from skillkernel.service.providers.base import (
    ChatMessage,
    LLMRequest,
    NormalizedResponse,
    ToolCall,
    ToolSpec,
)
from skillkernel.service.providers.openai_compat import (
    OpenAICompatibleAdapter,
    fireworks_adapter,
)
from skillkernel.storage.models import ProviderCredentials

LOOKUP = ToolSpec(
    name="lookup_deal",
    description="Find a deal by name",
    input_schema={"type": "object", "properties": {"name": {"type": "string"}}},
)


def creds(provider: str, base_url=None) -> ProviderCredentials:
    return ProviderCredentials(
        provider=provider, api_key="sk-test", base_url=base_url, source="platform"
    )


def transcript_with_tool_round() -> list:
    """User turn, assistant tool request, and two tool results."""

    assistant = NormalizedResponse(
        content="Looking that up",
        stop_reason="tool_use",
        tool_calls=[
            ToolCall(id="call_1", name="lookup_deal", input={"name": "Acme"}),
            ToolCall(id="call_2", name="lookup_deal", input={"name": "Globex"}),
        ],
    ).assistant_message()
    return [
        ChatMessage.user("Check Acme and Globex"),
        assistant,
        ChatMessage.tool_result("call_1", '{"amount": 10}'),
        ChatMessage.tool_result("call_2", '{"amount": 20}'),
    ]


class TestAnthropicAdapter:
    """Messages API translation."""

    def test_request_shape(self):
        adapter = AnthropicAdapter()
        http = adapter.build_request(
            "claude-sonnet-4-20250514",
            LLMRequest(
                messages=[ChatMessage.user("hi")],
                system_prompt="Be brief",
                tools=[LOOKUP],
                max_tokens=512,
                temperature=0.3,
            ),
            creds("anthropic"),
        )
        assert http.url == "https://api.anthropic.com/v1/messages"
        assert http.headers["x-api-key"] == "sk-test"
        assert http.headers["anthropic-version"] == "2023-06-01"
        assert http.body["model"] == "claude-sonnet-4-5"
        assert http.body["system"][0]["text"] == "Be brief"
        assert http.body["system"][0]["cache_control"] == {"type": "ephemeral"}
        assert http.body["tools"][0]["input_schema"] == LOOKUP.input_schema
        assert http.body["max_tokens"] == 512

    def test_tool_round_trip_keeps_ids(self):
        adapter = AnthropicAdapter()
        http = adapter.build_request(
            "claude-haiku-4-5-20251001",
            LLMRequest(messages=transcript_with_tool_round()),
            creds("anthropic", base_url="https://proxy.internal/v1/"),
        )
        messages = http.body["messages"]
        assert http.url == "https://proxy.internal/v1/messages"
        assert len(messages) == 3
        tool_uses = [b for b in messages[1]["content"] if b["type"] == "tool_use"]
        assert [b["id"] for b in tool_uses] == ["call_1", "call_2"]
        assert messages[2]["role"] == "user"
        assert [b["tool_use_id"] for b in messages[2]["content"]] == ["call_1", "call_2"]

    def test_parse_tool_use_response(self):
        response = AnthropicAdapter().parse_response(
            {
                "content": [
                    {"type": "text", "text": "Let me check"},
                    {"type": "tool_use", "id": "toolu_9", "name": "lookup_deal",
                     "input": {"name": "Acme"}},
                ],
                "stop_reason": "tool_use",
                "usage": {
                    "input_tokens": 100,
                    "output_tokens": 20,
                    "cache_creation_input_tokens": 40,
                    "cache_read_input_tokens": 60,
                },
            }
        )
        assert response.stop_reason == "tool_use"
        assert response.tool_calls == [
            ToolCall(id="toolu_9", name="lookup_deal", input={"name": "Acme"})
        ]
        assert response.content == "Let me check"
        assert response.usage.total == 120
        assert response.usage.cache_read_tokens == 60

    def test_unknown_stop_reason_is_end_turn(self):
        response = AnthropicAdapter().parse_response(
            {"content": [], "stop_reason": "stop_sequence"}
        )
        assert response.stop_reason == "end_turn"
        assert response.content == ""

    def test_non_object_body_raises(self):
        with pytest.raises(ProviderError):
            AnthropicAdapter().parse_response(["not", "a", "dict"])


class TestOpenAICompatibleAdapter:
    """Chat Completions translation shared by OpenAI and Fireworks."""

    def test_request_shape(self):
        adapter = OpenAICompatibleAdapter("openai")
        http = adapter.build_request(
            "gpt-4o",
            LLMRequest(
                messages=[ChatMessage.user("hi")],
                system_prompt="Be brief",
                tools=[LOOKUP],
                schema={"type": "object"},
            ),
            creds("openai"),
        )
        assert http.url == "https://api.openai.com/v1/chat/completions"
        assert http.headers["Authorization"] == "Bearer sk-test"
        assert http.body["messages"][0] == {"role": "system", "content": "Be brief"}
        assert http.body["tools"][0]["function"]["parameters"] == LOOKUP.input_schema
        assert http.body["response_format"] == {"type": "json_object"}

    def test_fireworks_prefixes_model(self):
        http = fireworks_adapter().build_request(
            "deepseek-v3p1", LLMRequest(messages=[ChatMessage.user("hi")]), creds("fireworks")
        )
        assert http.body["model"] == "accounts/fireworks/models/deepseek-v3p1"
        assert http.url == "https://api.fireworks.ai/inference/v1/chat/completions"
        assert "response_format" not in http.body

    def test_tool_round_trip_keeps_ids(self):
        http = OpenAICompatibleAdapter().build_request(
            "gpt-4o", LLMRequest(messages=transcript_with_tool_round()), creds("openai")
        )
        messages = http.body["messages"]
        assert [c["id"] for c in messages[1]["tool_calls"]] == ["call_1", "call_2"]
        assert json.loads(messages[1]["tool_calls"][0]["function"]["arguments"]) == {
            "name": "Acme"
        }
        assert [(m["role"], m["tool_call_id"]) for m in messages[2:]] == [
            ("tool", "call_1"),
            ("tool", "call_2"),
        ]

    def test_parse_tool_calls(self):
        response = OpenAICompatibleAdapter().parse_response(
            {
                "choices": [
                    {
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_7",
                                    "type": "function",
                                    "function": {
                                        "name": "lookup_deal",
                                        "arguments": '{"name": "Acme"}',
                                    },
                                }
                            ],
                        },
                        "finish_reason": "tool_calls",
                    }
                ],
                "usage": {"prompt_tokens": 30, "completion_tokens": 5},
            }
        )
        assert response.stop_reason == "tool_use"
        assert response.content == ""
        assert response.tool_calls[0] == ToolCall(
            id="call_7", name="lookup_deal", input={"name": "Acme"}
        )
        assert response.usage.total == 35

    def test_length_finish_reason(self):
        response = OpenAICompatibleAdapter().parse_response(
            {"choices": [{"message": {"content": "partial"}, "finish_reason": "length"}]}
        )
        assert response.stop_reason == "max_tokens"

    def test_empty_choices(self):
        response = OpenAICompatibleAdapter().parse_response({"choices": []})
        assert response.content == ""
        assert response.stop_reason == "end_turn"

    def test_malformed_tool_arguments_raise(self):
        with pytest.raises(ProviderError, match="malformed tool arguments"):
            OpenAICompatibleAdapter().parse_response(
                {
                    "choices": [
                        {
                            "message": {
                                "tool_calls": [
                                    {"id": "c", "function": {"name": "x", "arguments": "{oops"}}
                                ]
                            },
                            "finish_reason": "tool_calls",
                        }
                    ]
                }
            )
