from __future__ import annotations

from typing import Any, Dict, List

from skillkernel.config import PLATFORM_BASE_URLS
from skillkernel.service.errors import ProviderError
from skillkernel.service.providers.base import (
    ChatMessage,
    LLMRequest,
    NormalizedResponse,
    ProviderHttpRequest,
    ToolCall,
    ToolSpec,
    as_int,
    require_dict,
)
from skillkernel.storage.models import ProviderCredentials, TokenUsage

ANTHROPIC_VERSION = "2023-06-01"

# Dated model ids routed by tenants that the Messages API serves under another name
MODEL_ALIASES: Dict[str, str] = {
    "claude-sonnet-4-20250514": "claude-sonnet-4-5",
}


class AnthropicAdapter:
    """Messages API: content blocks, ``tool_use``/``tool_result`` pairs."""

    name = "anthropic"

    def build_request(
        self, model: str, request: LLMRequest, credentials: ProviderCredentials
    ) -> ProviderHttpRequest:
        base_url = (credentials.base_url or PLATFORM_BASE_URLS["anthropic"]).rstrip("/")
        body: Dict[str, Any] = {
            "model": MODEL_ALIASES.get(model, model),
            "messages": self._messages(request.messages),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.system_prompt:
            body["system"] = [
                {
                    "type": "text",
                    "text": request.system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if request.tools:
            body["tools"] = [self._tool(spec) for spec in request.tools]
        return ProviderHttpRequest(
            url=f"{base_url}/messages",
            headers={
                "x-api-key": credentials.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
            body=body,
        )

    def parse_response(self, payload: Dict[str, Any]) -> NormalizedResponse:
        payload = require_dict(payload, self.name)
        blocks = payload.get("content") or []
        if not isinstance(blocks, list):
            raise ProviderError(
                "anthropic response content is not a list", provider=self.name
            )
        texts: List[str] = []
        tool_calls: List[ToolCall] = []
        for block in blocks:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                texts.append(block.get("text") or "")
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(
                        id=str(block.get("id") or ""),
                        name=str(block.get("name") or ""),
                        input=block.get("input") or {},
                    )
                )
        stop_reason = payload.get("stop_reason")
        if stop_reason not in ("tool_use", "max_tokens"):
            stop_reason = "end_turn"
        usage = payload.get("usage") or {}
        return NormalizedResponse(
            content="\n".join(texts),
            stop_reason=stop_reason,
            tool_calls=tool_calls,
            usage=TokenUsage(
                input_tokens=as_int(usage.get("input_tokens")),
                output_tokens=as_int(usage.get("output_tokens")),
                cache_creation_tokens=as_int(usage.get("cache_creation_input_tokens")),
                cache_read_tokens=as_int(usage.get("cache_read_input_tokens")),
            ),
        )

    @staticmethod
    def _tool(spec: ToolSpec) -> Dict[str, Any]:
        return {
            "name": spec.name,
            "description": spec.description,
            "input_schema": spec.input_schema,
        }

    @staticmethod
    def _messages(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
        """Consecutive tool results collapse into one user turn of blocks."""

        result: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content,
                }
                last = result[-1] if result else None
                if (
                    last
                    and last["role"] == "user"
                    and isinstance(last["content"], list)
                    and all(b.get("type") == "tool_result" for b in last["content"])
                ):
                    last["content"].append(block)
                else:
                    result.append({"role": "user", "content": [block]})
            elif msg.role == "assistant" and msg.tool_calls:
                content: List[Dict[str, Any]] = []
                if msg.content:
                    content.append({"type": "text", "text": msg.content})
                for call in msg.tool_calls:
                    content.append(
                        {
                            "type": "tool_use",
                            "id": call.id,
                            "name": call.name,
                            "input": call.input,
                        }
                    )
                result.append({"role": "assistant", "content": content})
            else:
                result.append({"role": msg.role, "content": msg.content})
        return result
