from __future__ import annotations

import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from skillkernel.config import DEFAULT_TEMPERATURES, Settings
from skillkernel.logging import bind_run, get_logger, log_workflow_trace
from skillkernel.service.context import CancellationToken, ExecutionContext
from skillkernel.service.definitions import (
    AIStep,
    ComputeStep,
    Step,
    WorkflowDefinition,
    topological_order,
)
from skillkernel.service.errors import (
    ConfigurationError,
    RunCancelledError,
    ServiceError,
)
from skillkernel.service.guardrail import BudgetGuardrail
from skillkernel.service.providers.base import ChatMessage, LLMRequest, LLMTracking
from skillkernel.service.router import CapabilityRouter
from skillkernel.service.structured_output import parse_structured_output
from skillkernel.service.template import render
from skillkernel.service.tool_loop import ToolUseLoop
from skillkernel.service.tools import resolve_tool_specs
from skillkernel.storage.interfaces import (
    BusinessContextProvider,
    RunSink,
    RunStateCache,
    ToolRegistry,
)
from skillkernel.storage.models import RunRecord, StepOutcome

DEFAULT_SYSTEM_PROMPT = """You are executing the skill "{workflow_name}".

Your task: {step_name}

Important:
- Be specific with names and numbers
- Don't generalize - use actual data
- Focus on actionable insights
- Format your response clearly"""


class SkillEngine:
    """Runs a workflow definition step by step for one tenant.

    Steps execute sequentially in dependency order. A failing step is recorded
    and skipped over; it never aborts the run. The run record is written when
    the run starts and finalised exactly once.
    """

    def __init__(
        self,
        router: CapabilityRouter,
        tools: ToolRegistry,
        *,
        context_provider: Optional[BusinessContextProvider] = None,
        run_sink: Optional[RunSink] = None,
        cache: Optional[RunStateCache] = None,
        guardrail: Optional[BudgetGuardrail] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.router = router
        self.tools = tools
        self.context_provider = context_provider
        self.run_sink = run_sink
        self.cache = cache
        self.guardrail = guardrail or BudgetGuardrail.from_settings(self.settings)
        self.tool_loop = ToolUseLoop(
            router, tools, max_tokens=self.settings.default_max_tokens
        )
        self.logger = get_logger(__name__)

    async def execute(
        self,
        workflow: WorkflowDefinition,
        tenant_id: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RunRecord:
        # Invalid graphs raise before anything is written or called
        ordered = topological_order(workflow)

        run_id = str(uuid.uuid4())
        with bind_run(run_id, tenant_id=tenant_id, workflow_id=workflow.id):
            return await self._execute_ordered(
                workflow, ordered, run_id, tenant_id, params, cancel_token
            )

    async def _execute_ordered(
        self,
        workflow: WorkflowDefinition,
        ordered: List[Step],
        run_id: str,
        tenant_id: str,
        params: Optional[Dict[str, Any]],
        cancel_token: Optional[CancellationToken],
    ) -> RunRecord:
        business_context = await self._load_business_context(tenant_id)
        business_context["params"] = dict(params or {})
        context = ExecutionContext(
            run_id=run_id,
            tenant_id=tenant_id,
            workflow_id=workflow.id,
            business_context=business_context,
            cancel_token=cancel_token or CancellationToken(),
        )
        record = RunRecord(
            id=run_id,
            workflow_id=workflow.id,
            tenant_id=tenant_id,
            started_at=context.started_at,
            output_format=workflow.output_format,
        )
        started = time.monotonic()
        self.logger.info(
            "skill_run_started",
            workflow_id=workflow.id,
            tenant_id=tenant_id,
            steps=[step.id for step in ordered],
        )
        await self._sink_start(record)
        await self._persist_run_state(record, context)

        last_failed = False
        cancelled = False
        for index, step in enumerate(ordered):
            if context.cancel_token.cancelled:
                cancelled = True
                self._mark_skipped(record, ordered[index:])
                context.record_error(
                    step.id,
                    context.cancel_token.reason or "run cancelled",
                    error_code=RunCancelledError.error_code,
                )
                break
            outcome = await self._run_step(workflow, step, context)
            record.steps.append(outcome)
            last_failed = outcome.status == "failed"
            await self._persist_run_state(record, context)
            if context.cancel_token.cancelled:
                cancelled = True
                self._mark_skipped(record, ordered[index + 1:])
                break

        last_step = ordered[-1]
        if cancelled or last_failed:
            record.status = "failed"
            record.output = None
        else:
            record.status = "partial" if context.errors else "completed"
            record.output = context.step_results.get(last_step.output_key)

        record.errors = list(context.errors)
        record.token_usage = dict(context.token_usage)
        record.tool_call_count = context.tool_call_count
        record.step_data = context.results_snapshot()
        record.completed_at = datetime.utcnow()
        record.duration_ms = int((time.monotonic() - started) * 1000)

        log_workflow_trace(
            [
                {"step": o.step_id, "status": o.status, "duration_ms": o.duration_ms}
                for o in record.steps
            ],
            self.logger,
        )
        self.logger.info(
            "skill_run_finished",
            workflow_id=workflow.id,
            status=record.status,
            errors=len(record.errors),
            total_tokens=record.total_tokens,
            tool_calls=record.tool_call_count,
            duration_ms=record.duration_ms,
        )
        await self._sink_finish(record)
        await self._persist_run_state(record, context)
        return record

    async def _run_step(
        self, workflow: WorkflowDefinition, step: Step, context: ExecutionContext
    ) -> StepOutcome:
        started = time.monotonic()
        tokens_before = sum(context.token_usage.values())
        self.logger.info("skill_step_started", step_id=step.id, tier=step.tier)
        try:
            result = await self._execute_step(workflow, step, context)
            context.store_result(step.output_key, result)
        except RunCancelledError as exc:
            self.logger.info("skill_step_cancelled", step_id=step.id)
            context.record_error(step.id, exc.message, error_code=exc.error_code)
            return self._outcome(step, "failed", started, context, tokens_before, exc.message)
        except Exception as exc:
            message = exc.message if isinstance(exc, ServiceError) else str(exc)
            error_code = exc.error_code if isinstance(exc, ServiceError) else None
            self.logger.warning(
                "skill_step_failed",
                step_id=step.id,
                tier=step.tier,
                error_type=type(exc).__name__,
                error=message,
            )
            context.record_error(step.id, message, error_code=error_code)
            return self._outcome(step, "failed", started, context, tokens_before, message)
        outcome = self._outcome(step, "completed", started, context, tokens_before)
        self.logger.info(
            "skill_step_completed",
            step_id=step.id,
            duration_ms=outcome.duration_ms,
            tokens=outcome.token_usage,
        )
        return outcome

    def _outcome(
        self,
        step: Step,
        status: str,
        started: float,
        context: ExecutionContext,
        tokens_before: int,
        error: Optional[str] = None,
    ) -> StepOutcome:
        return StepOutcome(
            step_id=step.id,
            status=status,
            tier=step.tier,
            output_key=step.output_key,
            duration_ms=int((time.monotonic() - started) * 1000),
            token_usage=sum(context.token_usage.values()) - tokens_before,
            error=error,
        )

    @staticmethod
    def _mark_skipped(record: RunRecord, steps: List[Step]) -> None:
        for step in steps:
            record.steps.append(
                StepOutcome(
                    step_id=step.id,
                    status="skipped",
                    tier=step.tier,
                    output_key=step.output_key,
                )
            )

    async def _execute_step(
        self, workflow: WorkflowDefinition, step: Step, context: ExecutionContext
    ) -> Any:
        if isinstance(step, ComputeStep):
            return await self._execute_compute(step, context)
        budget = self.guardrail.validate(step, context)
        return await self._execute_ai(workflow, step, context, budget.rendered)

    async def _execute_compute(self, step: ComputeStep, context: ExecutionContext) -> Any:
        tool = self.tools.lookup(step.function)
        if tool is None:
            raise ConfigurationError(
                f"Tool not found: {step.function}",
                detail={"step_id": step.id, "function": step.function},
            )
        return await tool.execute(dict(step.args), context)

    async def _execute_ai(
        self,
        workflow: WorkflowDefinition,
        step: AIStep,
        context: ExecutionContext,
        prompt: str,
    ) -> Any:
        system_prompt = self._build_system_prompt(workflow, step, context)
        temperature = (
            step.temperature
            if step.temperature is not None
            else DEFAULT_TEMPERATURES[step.capability]
        )
        max_tokens = step.max_tokens or self.settings.default_max_tokens

        if step.tools:
            specs = resolve_tool_specs(self.tools, step.tools)
            max_tool_calls = (
                step.max_tool_calls
                if step.max_tool_calls is not None
                else self.settings.default_max_tool_calls
            )
            content = await self.tool_loop.run(
                context.tenant_id,
                step.capability,
                system_prompt,
                prompt,
                specs,
                max_tool_calls,
                context=context,
                tier=step.tier,
                temperature=temperature,
                max_tokens=max_tokens,
                step_id=step.id,
            )
        else:
            response = await self.router.call(
                context.tenant_id,
                step.capability,
                LLMRequest(
                    messages=[ChatMessage.user(prompt)],
                    system_prompt=system_prompt,
                    schema=step.output_schema,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    tracking=LLMTracking(
                        run_id=context.run_id,
                        workflow_id=context.workflow_id,
                        step_id=step.id,
                    ),
                ),
                cancel_token=context.cancel_token,
            )
            context.add_tokens(step.tier, response.usage.total)
            content = response.content

        if step.output_schema and content:
            return parse_structured_output(content, step.output_schema, step_id=step.id)
        return content

    def _build_system_prompt(
        self, workflow: WorkflowDefinition, step: AIStep, context: ExecutionContext
    ) -> str:
        if workflow.system_prompt:
            return render(workflow.system_prompt, context)
        return DEFAULT_SYSTEM_PROMPT.format(
            workflow_name=workflow.name, step_name=step.name or step.id
        )

    async def _load_business_context(self, tenant_id: str) -> Dict[str, Any]:
        if self.context_provider is None:
            return {}
        return dict(await self.context_provider.get_context(tenant_id) or {})

    async def _sink_start(self, record: RunRecord) -> None:
        if self.run_sink is None:
            return
        try:
            await self.run_sink.start_run(record)
        except Exception as exc:
            self.logger.error("run_sink_start_failed", run_id=record.id, error=str(exc))

    async def _sink_finish(self, record: RunRecord) -> None:
        if self.run_sink is None:
            return
        try:
            await self.run_sink.finish_run(record)
        except Exception as exc:
            self.logger.error("run_sink_finish_failed", run_id=record.id, error=str(exc))

    async def _persist_run_state(
        self, record: RunRecord, context: ExecutionContext
    ) -> None:
        if not self.cache:
            return
        state = {
            "run_id": record.id,
            "workflow_id": record.workflow_id,
            "tenant_id": record.tenant_id,
            "status": record.status,
            "steps": [
                {"step_id": o.step_id, "status": o.status, "error": o.error}
                for o in record.steps
            ],
            "errors": list(context.errors),
            "token_usage": dict(context.token_usage),
            "tool_call_count": context.tool_call_count,
        }
        try:
            await self.cache.set_workflow_state(f"run:{record.id}", state)
        except Exception as exc:
            self.logger.warning("run_state_persist_failed", run_id=record.id, error=str(exc))
