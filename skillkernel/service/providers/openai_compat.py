from __future__ import annotations

import json
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

FINISH_REASONS = {"tool_calls": "tool_use", "length": "max_tokens"}


class OpenAICompatibleAdapter:
    """Chat Completions wire format shared by OpenAI and Fireworks."""

    def __init__(self, name: str = "openai", *, model_prefix: str = "") -> None:
        self.name = name
        self.model_prefix = model_prefix

    def build_request(
        self, model: str, request: LLMRequest, credentials: ProviderCredentials
    ) -> ProviderHttpRequest:
        base_url = credentials.base_url or PLATFORM_BASE_URLS.get(
            self.name, PLATFORM_BASE_URLS["openai"]
        )
        body: Dict[str, Any] = {
            "model": f"{self.model_prefix}{model}",
            "messages": self._messages(request.messages, request.system_prompt),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.tools:
            body["tools"] = [self._tool(spec) for spec in request.tools]
        if request.schema:
            body["response_format"] = {"type": "json_object"}
        return ProviderHttpRequest(
            url=f"{base_url.rstrip('/')}/chat/completions",
            headers={
                "Authorization": f"Bearer {credentials.api_key}",
                "Content-Type": "application/json",
            },
            body=body,
        )

    def parse_response(self, payload: Dict[str, Any]) -> NormalizedResponse:
        payload = require_dict(payload, self.name)
        usage = payload.get("usage") or {}
        token_usage = TokenUsage(
            input_tokens=as_int(usage.get("prompt_tokens")),
            output_tokens=as_int(usage.get("completion_tokens")),
        )
        choices = payload.get("choices") or []
        if not choices:
            return NormalizedResponse(content="", usage=token_usage)
        choice = choices[0] or {}
        message = choice.get("message") or {}
        tool_calls: List[ToolCall] = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function") or {}
            arguments = function.get("arguments") or "{}"
            try:
                parsed = json.loads(arguments) if isinstance(arguments, str) else arguments
            except json.JSONDecodeError as exc:
                raise ProviderError(
                    f"{self.name} returned malformed tool arguments",
                    provider=self.name,
                    detail={"tool": function.get("name"), "arguments": arguments[:200]},
                ) from exc
            tool_calls.append(
                ToolCall(
                    id=str(raw.get("id") or ""),
                    name=str(function.get("name") or ""),
                    input=parsed or {},
                )
            )
        return NormalizedResponse(
            content=message.get("content") or "",
            stop_reason=FINISH_REASONS.get(choice.get("finish_reason"), "end_turn"),
            tool_calls=tool_calls,
            usage=token_usage,
        )

    @staticmethod
    def _tool(spec: ToolSpec) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": spec.name,
                "description": spec.description,
                "parameters": spec.input_schema,
            },
        }

    @staticmethod
    def _messages(
        messages: List[ChatMessage], system_prompt: str | None
    ) -> List[Dict[str, Any]]:
        result: List[Dict[str, Any]] = []
        if system_prompt:
            result.append({"role": "system", "content": system_prompt})
        for msg in messages:
            if msg.role == "tool":
                result.append(
                    {
                        "role": "tool",
                        "tool_call_id": msg.tool_call_id,
                        "content": msg.content,
                    }
                )
            elif msg.role == "assistant" and msg.tool_calls:
                result.append(
                    {
                        "role": "assistant",
                        "content": msg.content or None,
                        "tool_calls": [
                            {
                                "id": call.id,
                                "type": "function",
                                "function": {
                                    "name": call.name,
                                    "arguments": json.dumps(call.input),
                                },
                            }
                            for call in msg.tool_calls
                        ],
                    }
                )
            else:
                result.append({"role": msg.role, "content": msg.content})
        return result


def fireworks_adapter() -> OpenAICompatibleAdapter:
    return OpenAICompatibleAdapter("fireworks", model_prefix="accounts/fireworks/models/")
