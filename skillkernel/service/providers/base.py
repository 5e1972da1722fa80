from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from skillkernel.service.errors import ProviderError
from skillkernel.storage.models import ProviderCredentials, TokenUsage

STOP_REASONS = ("end_turn", "tool_use", "max_tokens")


@dataclass
class ToolCall:
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolSpec:
    """Provider-neutral tool declaration sent with a request."""

    name: str
    description: str
    input_schema: Dict[str, Any]


@dataclass
class ChatMessage:
    """One transcript entry.

    ``role`` is ``user``, ``assistant`` or ``tool``. Assistant turns that asked
    for tools carry ``tool_calls``; tool results carry ``tool_call_id``.
    """

    role: str
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role="user", content=content)

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str) -> "ChatMessage":
        return cls(role="tool", content=content, tool_call_id=tool_call_id)


@dataclass
class LLMTracking:
    run_id: Optional[str] = None
    workflow_id: Optional[str] = None
    step_id: Optional[str] = None


@dataclass
class LLMRequest:
    messages: List[ChatMessage]
    system_prompt: Optional[str] = None
    tools: List[ToolSpec] = field(default_factory=list)
    schema: Optional[Dict[str, Any]] = None
    max_tokens: int = 4096
    temperature: float = 0.1
    tracking: Optional[LLMTracking] = None


@dataclass
class NormalizedResponse:
    content: str
    stop_reason: str = "end_turn"
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)

    def assistant_message(self) -> ChatMessage:
        """Transcript entry recording this response, tool requests included."""

        return ChatMessage(
            role="assistant", content=self.content, tool_calls=list(self.tool_calls)
        )


@dataclass
class ProviderHttpRequest:
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]


class ProviderAdapter(Protocol):
    """Translates between the neutral request/response shape and one wire format."""

    name: str

    def build_request(
        self, model: str, request: LLMRequest, credentials: ProviderCredentials
    ) -> ProviderHttpRequest: ...

    def parse_response(self, payload: Dict[str, Any]) -> NormalizedResponse: ...


def require_dict(payload: Any, provider: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ProviderError(
            f"{provider} returned a non-object body",
            provider=provider,
            detail={"body_type": type(payload).__name__},
        )
    return payload


def as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
