"""Tests for the plan model and strict planner payload validation."""

import pytest
from pydantic import ValidationError

from stepsql.planning.schema import (
    ChartSpec,
    ModifiedStep,
    PlannerPlan,
    PlannerStep,
    RefinementProposal,
    Step,
    StepKind,
)


def test_removed_kind_clears_sql():
    step = Step(id="1", kind=StepKind.REMOVED, sql="SELECT 1")
    assert step.sql is None
    assert step.is_removed


@pytest.mark.parametrize("sql", [None, "", "   ", "REMOVED", "removed"])
def test_missing_or_sentinel_sql_becomes_removed(sql):
    step = Step(id="1", kind=StepKind.QUERY, sql=sql)
    assert step.is_removed
    assert step.sql is None


def test_self_and_duplicate_dependencies_dropped():
    step = Step(id="2", sql="SELECT 1", depends_on=["1", "2", "1"])
    assert step.depends_on == ["1"]


class TestPlannerPayload:
    """Planner JSON is validated into tagged steps."""

    def test_camel_case_payload(self):
        raw = {
            "question": "q",
            "intent": "count orders",
            "databaseType": "postgresql",
            "steps": [
                {"id": "step_1", "type": "query", "description": "d", "sql": "SELECT 1", "dependsOn": []},
                {"id": "step_2", "type": "Aggregation", "sql": "SELECT 2", "dependsOn": ["step_1"]},
            ],
        }
        plan = PlannerPlan.model_validate(raw).to_plan("How many?", "postgresql")

        assert plan.question == "How many?"
        assert plan.intent == "count orders"
        assert [s.kind for s in plan.steps] == [StepKind.QUERY, StepKind.AGGREGATION]
        assert plan.steps[1].depends_on == ["step_1"]

    def test_numeric_ids_and_dependency_aliases(self):
        step = PlannerStep.model_validate({"id": 1, "sql": "SELECT 1", "dependencies": [2, None]})
        assert step.id == "1"
        assert step.depends_on == ["2"]

    def test_unknown_step_type_rejected(self):
        with pytest.raises(ValidationError):
            PlannerStep.model_validate({"id": "1", "type": "mutation", "sql": "SELECT 1"})

    def test_empty_steps_rejected(self):
        with pytest.raises(ValidationError):
            PlannerPlan.model_validate({"intent": "x", "steps": []})

    def test_dangling_dependencies_repaired_on_load(self):
        raw = {"steps": [{"id": "a", "sql": "SELECT 1", "dependsOn": ["ghost", "a"]}]}
        plan = PlannerPlan.model_validate(raw).to_plan("q", "duckdb")
        assert plan.steps[0].depends_on == []

    def test_duplicate_step_ids_keep_first(self):
        raw = {
            "steps": [
                {"id": "a", "sql": "SELECT 1"},
                {"id": "a", "sql": "SELECT 2"},
            ]
        }
        plan = PlannerPlan.model_validate(raw).to_plan("q", "duckdb")
        assert len(plan.steps) == 1
        assert plan.steps[0].sql == "SELECT 1"


class TestModifiedStep:
    def test_removal_signals(self):
        assert ModifiedStep(id="1", sql="REMOVED").is_removal()
        assert ModifiedStep(id="1", description="Step removed: not needed").is_removal()
        assert ModifiedStep(id="1", type="removed").is_removal()

    def test_plain_edit_is_not_removal(self):
        assert not ModifiedStep(id="1", sql="SELECT 2", description="Broaden the filter").is_removal()

    def test_refinement_proposal_tolerates_nulls(self):
        proposal = RefinementProposal.model_validate(
            {"shouldRefine": True, "reasoning": None, "newSteps": None, "modifiedSteps": None}
        )
        assert proposal.should_refine
        assert proposal.new_steps == []
        assert proposal.modified_steps == []


class TestChartSpec:
    def test_aliases_and_extra_fields(self):
        chart = ChartSpec.model_validate({
            "type": "bar",
            "data": [{"name": 2024, "value": "12.5", "color": "red"}],
            "xAxisKey": "name",
        })
        assert chart.kind == "bar"
        assert chart.data[0].name == "2024"
        assert chart.data[0].value == 12.5
        assert chart.x_axis_key == "name"
        assert chart.model_dump(by_alias=True)["data"][0]["color"] == "red"

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            ChartSpec.model_validate({"type": "scatter", "data": []})
