from __future__ import annotations

import json
from enum import Enum
from typing import Any, List, Optional, Sequence

from skillkernel.logging import get_logger
from skillkernel.service.context import ExecutionContext
from skillkernel.service.errors import RunCancelledError, ToolExecutionError
from skillkernel.service.providers.base import (
    ChatMessage,
    LLMRequest,
    LLMTracking,
    NormalizedResponse,
    ToolCall,
    ToolSpec,
)
from skillkernel.service.router import CapabilityRouter
from skillkernel.storage.interfaces import ToolRegistry

FINAL_ANSWER_PROMPT = (
    "You have used all available tool calls. Please provide your final analysis "
    "now based on the data you have gathered so far. Do not request any more tools."
)


class LoopState(str, Enum):
    PENDING = "pending"
    AWAITING_TOOL_RESULTS = "awaiting_tool_results"
    DONE = "done"


class ToolUseLoop:
    """Bounded model/tool conversation for one step.

    State machine: ``PENDING`` calls the model; a ``tool_use`` answer moves to
    ``AWAITING_TOOL_RESULTS``, where every requested call is executed and its
    result appended, then back to ``PENDING``. Any other answer is ``DONE``.
    Once ``max_tool_calls`` tool executions have happened the model is asked
    once more, without tools, for a final answer, so a run makes at most
    ``max_tool_calls + 1`` model calls.
    """

    def __init__(
        self,
        router: CapabilityRouter,
        registry: ToolRegistry,
        *,
        max_tokens: int = 4096,
    ) -> None:
        self.router = router
        self.registry = registry
        self.max_tokens = max_tokens
        self.logger = get_logger(__name__)

    async def run(
        self,
        tenant_id: str,
        capability: str,
        system_prompt: str,
        user_prompt: str,
        tools: Sequence[ToolSpec],
        max_tool_calls: int,
        *,
        context: ExecutionContext,
        tier: str = "reason",
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        step_id: Optional[str] = None,
    ) -> str:
        transcript: List[ChatMessage] = [ChatMessage.user(user_prompt)]
        declared = {spec.name for spec in tools}
        tool_calls = 0
        state = LoopState.PENDING
        response: Optional[NormalizedResponse] = None
        tracking = LLMTracking(
            run_id=context.run_id, workflow_id=context.workflow_id, step_id=step_id
        )

        def request(with_tools: bool) -> LLMRequest:
            return LLMRequest(
                messages=list(transcript),
                system_prompt=system_prompt,
                tools=list(tools) if with_tools else [],
                max_tokens=max_tokens or self.max_tokens,
                temperature=temperature,
                tracking=tracking,
            )

        while state is not LoopState.DONE:
            context.cancel_token.raise_if_cancelled()
            if state is LoopState.PENDING:
                if tool_calls >= max_tool_calls:
                    break
                response = await self.router.call(
                    tenant_id,
                    capability,
                    request(with_tools=True),
                    cancel_token=context.cancel_token,
                )
                context.add_tokens(tier, response.usage.total)
                if response.stop_reason == "tool_use" and response.tool_calls:
                    transcript.append(response.assistant_message())
                    state = LoopState.AWAITING_TOOL_RESULTS
                else:
                    state = LoopState.DONE
            else:
                for call in response.tool_calls:
                    tool_calls += 1
                    context.count_tool_call()
                    result = await self._execute(call, declared, context)
                    transcript.append(ChatMessage.tool_result(call.id, result))
                state = LoopState.PENDING

        if state is LoopState.DONE:
            return response.content if response else ""

        self.logger.warning(
            "tool_loop_limit_reached",
            step_id=step_id,
            max_tool_calls=max_tool_calls,
            tool_calls=tool_calls,
        )
        transcript.append(ChatMessage.user(FINAL_ANSWER_PROMPT))
        final = await self.router.call(
            tenant_id,
            capability,
            request(with_tools=False),
            cancel_token=context.cancel_token,
        )
        context.add_tokens(tier, final.usage.total)
        return final.content

    async def _execute(
        self, call: ToolCall, declared: set, context: ExecutionContext
    ) -> str:
        """Run one tool call; every failure is returned to the model as data."""

        self.logger.info("tool_call", tool=call.name, tool_call_id=call.id)
        if call.name not in declared:
            return _dump({"error": f"Tool not available for this step: {call.name}"})
        tool = self.registry.lookup(call.name)
        if tool is None:
            return _dump({"error": f"Tool not found: {call.name}"})
        try:
            result = await tool.execute(call.input or {}, context)
        except RunCancelledError:
            raise
        except ToolExecutionError as exc:
            return _dump({"error": exc.message})
        except Exception as exc:
            self.logger.warning(
                "tool_execution_failed",
                tool=call.name,
                tool_call_id=call.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return _dump({"error": str(exc)})
        return _dump(result)


def _dump(value: Any) -> str:
    """JSON-encode a tool result; strings are quoted like any other value."""

    return json.dumps(value, default=str)
