from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from skillkernel.service.errors import ConfigurationError


class _StepBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    name: str = ""
    depends_on: Tuple[str, ...] = ()
    output_key: str


class ComputeStep(_StepBase):
    """Deterministic call to a registered function."""

    tier: Literal["compute"] = "compute"
    function: str
    args: Dict[str, Any] = Field(default_factory=dict)


class _AIStep(_StepBase):
    prompt: str
    output_schema: Optional[Dict[str, Any]] = None
    tools: Tuple[str, ...] = ()
    max_tool_calls: Optional[int] = Field(None, ge=0)
    max_tokens: Optional[int] = Field(None, gt=0)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)


class ExtractStep(_AIStep):
    """Cheap extraction/classification call."""

    tier: Literal["extract"] = "extract"
    capability: Literal["extract", "classify"] = "extract"


class ReasonStep(_AIStep):
    """Reasoning/generation call, optionally driving tools."""

    tier: Literal["reason"] = "reason"
    capability: Literal["reason", "generate"] = "reason"


Step = Annotated[Union[ComputeStep, ExtractStep, ReasonStep], Field(discriminator="tier")]
AIStep = Union[ExtractStep, ReasonStep]


class WorkflowDefinition(BaseModel):
    """Declarative skill: a dependency graph of steps. Never mutated at runtime."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    name: str
    description: str = ""
    version: str = "1"
    system_prompt: Optional[str] = None
    output_format: str = "json"
    steps: Tuple[Step, ...]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(
                "invalid workflow definition",
                detail={"errors": exc.errors(include_url=False)},
            ) from exc

    def step_by_id(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


def validate_workflow(workflow: WorkflowDefinition) -> None:
    """Reject graphs that cannot be executed: empty, duplicates, dangling deps."""

    if not workflow.steps:
        raise ConfigurationError(
            f"workflow '{workflow.id}' has no steps", detail={"workflow_id": workflow.id}
        )
    seen_ids: set[str] = set()
    seen_keys: set[str] = set()
    for step in workflow.steps:
        if step.id in seen_ids:
            raise ConfigurationError(
                f"duplicate step id '{step.id}'", detail={"step_id": step.id}
            )
        if step.output_key in seen_keys:
            raise ConfigurationError(
                f"duplicate output key '{step.output_key}'",
                detail={"step_id": step.id, "output_key": step.output_key},
            )
        seen_ids.add(step.id)
        seen_keys.add(step.output_key)
    for step in workflow.steps:
        for dep in step.depends_on:
            if dep not in seen_ids:
                raise ConfigurationError(
                    f"step '{step.id}' depends on unknown step '{dep}'",
                    detail={"step_id": step.id, "dependency": dep},
                )


def topological_order(workflow: WorkflowDefinition) -> List[Step]:
    """Stable depth-first ordering of ``workflow.steps``.

    Dependencies are visited in ``depends_on`` order before the step itself and
    the outer loop follows declaration order, so graphs without constraints
    between two steps keep their declared order. A cycle raises
    ``ConfigurationError`` naming the steps involved.
    """

    validate_workflow(workflow)
    by_id = {step.id: step for step in workflow.steps}
    ordered: List[Step] = []
    visited: set[str] = set()
    visiting: List[str] = []

    def visit(step: Step) -> None:
        if step.id in visited:
            return
        if step.id in visiting:
            cycle = visiting[visiting.index(step.id):] + [step.id]
            raise ConfigurationError(
                f"circular dependency detected at step '{step.id}'",
                detail={"cycle": cycle},
            )
        visiting.append(step.id)
        for dep in step.depends_on:
            visit(by_id[dep])
        visiting.pop()
        visited.add(step.id)
        ordered.append(step)

    for step in workflow.steps:
        visit(step)
    return ordered
