"""Tests for workflow definition parsing and dependency ordering."""

from __future__ import annotations

import pytest

from skillkernel.service.definitions import (
    ComputeStep,
    ExtractStep,
    ReasonStep,
    WorkflowDefinition,
    topological_order,
    validate_workflow,
)
from skillkernel.service.errors import ConfigurationError


def workflow(*steps: dict) -> WorkflowDefinition:
    return WorkflowDefinition.from_dict({"id": "wf", "name": "Test", "steps": list(steps)})


def compute(step_id: str, deps=(), key=None) -> dict:
    return {
        "id": step_id,
        "tier": "compute",
        "function": "noop",
        "depends_on": list(deps),
        "output_key": key or step_id.lower(),
    }


class TestParsing:
    """Discriminated step parsing."""

    def test_tiers_map_to_step_types(self):
        wf = workflow(
            compute("A"),
            {"id": "B", "tier": "extract", "prompt": "p", "output_key": "b"},
            {
                "id": "C",
                "tier": "reason",
                "capability": "generate",
                "prompt": "p",
                "tools": ["lookup"],
                "output_key": "c",
            },
        )
        a, b, c = wf.steps
        assert isinstance(a, ComputeStep)
        assert isinstance(b, ExtractStep) and b.capability == "extract"
        assert isinstance(c, ReasonStep) and c.capability == "generate"
        assert c.tools == ("lookup",)

    def test_unknown_tier_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            workflow({"id": "A", "tier": "magic", "output_key": "a"})

    def test_extract_step_rejects_reason_capability(self):
        with pytest.raises(ConfigurationError):
            workflow(
                {
                    "id": "A",
                    "tier": "extract",
                    "capability": "reason",
                    "prompt": "p",
                    "output_key": "a",
                }
            )

    def test_definition_is_immutable(self):
        wf = workflow(compute("A"))
        with pytest.raises(Exception):
            wf.steps[0].output_key = "other"

    def test_step_by_id(self):
        wf = workflow(compute("A"), compute("B"))
        assert wf.step_by_id("B").id == "B"
        assert wf.step_by_id("Z") is None


class TestValidation:
    """Structural checks before execution."""

    def test_empty_workflow_rejected(self):
        with pytest.raises(ConfigurationError):
            validate_workflow(workflow())

    def test_duplicate_step_ids_rejected(self):
        with pytest.raises(ConfigurationError, match="duplicate step id"):
            validate_workflow(workflow(compute("A", key="x"), compute("A", key="y")))

    def test_duplicate_output_keys_rejected(self):
        with pytest.raises(ConfigurationError, match="duplicate output key"):
            validate_workflow(workflow(compute("A", key="x"), compute("B", key="x")))

    def test_unknown_dependency_rejected(self):
        with pytest.raises(ConfigurationError, match="unknown step"):
            validate_workflow(workflow(compute("A", deps=["Z"])))


class TestTopologicalOrder:
    """Dependency ordering."""

    def test_dependencies_run_first(self):
        wf = workflow(compute("C", deps=["B"]), compute("B", deps=["A"]), compute("A"))
        assert [s.id for s in topological_order(wf)] == ["A", "B", "C"]

    def test_independent_steps_keep_declared_order(self):
        wf = workflow(compute("X"), compute("Y"), compute("Z"))
        assert [s.id for s in topological_order(wf)] == ["X", "Y", "Z"]

    def test_every_step_after_its_dependencies(self):
        wf = workflow(
            compute("D", deps=["B", "C"]),
            compute("B", deps=["A"]),
            compute("C", deps=["A"]),
            compute("A"),
        )
        order = [s.id for s in topological_order(wf)]
        position = {step_id: i for i, step_id in enumerate(order)}
        for step in wf.steps:
            for dep in step.depends_on:
                assert position[dep] < position[step.id]

    def test_cycle_raises_with_cycle_detail(self):
        wf = workflow(compute("A", deps=["C"]), compute("B", deps=["A"]), compute("C", deps=["B"]))
        with pytest.raises(ConfigurationError) as excinfo:
            topological_order(wf)
        cycle = excinfo.value.detail["cycle"]
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"A", "B", "C"}

    def test_self_dependency_is_a_cycle(self):
        with pytest.raises(ConfigurationError, match="circular"):
            topological_order(workflow(compute("A", deps=["A"])))
