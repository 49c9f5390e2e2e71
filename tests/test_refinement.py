"""Tests for the refinement policy and proposal merging."""

import pytest

from stepsql.errors import PlannerError
from stepsql.execution.refinement import (
    RefinementController,
    RefinementPolicy,
    apply_refinement,
    should_refine,
)
from stepsql.execution.step_executor import StepOutcome
from stepsql.planning.resolver import next_eligible
from stepsql.planning.schema import RefinementProposal, StepKind, StepResult
from tests.fakes import FakePlanner, make_plan, step


def outcome(step_id="1", rows=1):
    return StepOutcome(
        step_id=step_id,
        result=StepResult(rows=[{"n": i} for i in range(rows)], columns=["n"], row_count=rows),
        row_count=rows,
        execution_time_ms=1.0,
    )


def proposal(**payload):
    payload.setdefault("shouldRefine", True)
    return RefinementProposal.model_validate(payload)


@pytest.fixture
def two_done_plan():
    """Two executed steps and one pending."""
    plan = make_plan(step("1"), step("2"), step("3"))
    plan.executed_step_ids.extend(["1", "2"])
    plan.successful_steps = 2
    return plan


class TestShouldRefine:
    def test_every_second_success(self, two_done_plan):
        assert should_refine(two_done_plan, outcome(rows=3))
        two_done_plan.successful_steps = 1
        assert not should_refine(two_done_plan, outcome(rows=3))

    def test_empty_result_triggers(self, two_done_plan):
        two_done_plan.successful_steps = 1
        assert should_refine(two_done_plan, outcome(rows=0))
        policy = RefinementPolicy(refine_on_empty=False)
        assert not should_refine(two_done_plan, outcome(rows=0), policy)

    def test_large_result_triggers(self, two_done_plan):
        two_done_plan.successful_steps = 1
        assert should_refine(two_done_plan, outcome(rows=1001))
        assert not should_refine(two_done_plan, outcome(rows=1000))

    def test_never_without_pending_steps(self, two_done_plan):
        two_done_plan.executed_step_ids.append("3")
        assert not should_refine(two_done_plan, outcome(rows=0))

    def test_round_bound(self, two_done_plan):
        two_done_plan.refinement_rounds = 2
        assert not should_refine(two_done_plan, outcome(rows=0), RefinementPolicy(max_rounds=2))

    def test_no_outcome(self, two_done_plan):
        assert not should_refine(two_done_plan, None)


class TestApplyRefinement:
    def test_new_steps_appended_and_collisions_dropped(self):
        plan = make_plan(step("1"))
        refined = apply_refinement(plan, proposal(newSteps=[
            step("1", sql="SELECT 'dup'"),
            step("2", depends_on=["1"]),
        ]))

        assert refined.step_ids() == ["1", "2"]
        assert refined.get_step("1").sql == "SELECT '1' AS step"
        assert refined.refinement_rounds == 1
        assert plan.step_ids() == ["1"]

    def test_removal_repairs_dependents(self):
        plan = make_plan(step("1"), step("2"), step("3", depends_on=["1", "2"]))
        refined = apply_refinement(plan, proposal(modifiedSteps=[
            {"id": "2", "sql": "REMOVED", "reasoning": "Redundant"},
        ]))

        removed = refined.get_step("2")
        assert removed.kind == StepKind.REMOVED
        assert removed.sql is None
        assert removed.reasoning == "Redundant"
        assert refined.get_step("3").depends_on == ["1"]

    def test_removal_by_description(self):
        plan = make_plan(step("1"), step("2"))
        refined = apply_refinement(plan, proposal(modifiedSteps=[
            {"id": "2", "description": "Step removed because step 1 covers it"},
        ]))
        assert refined.get_step("2").is_removed

    def test_modification_merges_fields(self):
        plan = make_plan(step("1"), step("2"))
        refined = apply_refinement(plan, proposal(modifiedSteps=[
            {"id": "2", "sql": " SELECT 42 ", "dependsOn": ["1", "ghost"]},
        ]))
        updated = refined.get_step("2")
        assert updated.sql == "SELECT 42"
        assert updated.depends_on == ["1"]

    def test_terminal_steps_are_immune(self):
        plan = make_plan(step("1"), step("2"))
        plan.executed_step_ids.append("1")
        plan.failed_step_ids.append("2")
        refined = apply_refinement(plan, proposal(modifiedSteps=[
            {"id": "1", "sql": "REMOVED"},
            {"id": "2", "sql": "SELECT 2"},
        ]))
        assert refined.get_step("1").sql == "SELECT '1' AS step"
        assert refined.get_step("2").sql == "SELECT '2' AS step"

    def test_unknown_modification_ignored(self):
        plan = make_plan(step("1"))
        refined = apply_refinement(plan, proposal(modifiedSteps=[{"id": "nope", "sql": "SELECT 1"}]))
        assert refined.step_ids() == ["1"]

    def test_declined_proposal_returns_plan_unchanged(self):
        plan = make_plan(step("1"))
        assert apply_refinement(plan, RefinementProposal(should_refine=False)) is plan

    def test_removed_step_then_skipped_by_resolver(self):
        plan = make_plan(step("1"), step("2", depends_on=["1"]))
        refined = apply_refinement(plan, proposal(modifiedSteps=[{"id": "1", "type": "removed"}]))
        refined, nxt = next_eligible(refined)
        assert "1" in refined.executed_step_ids
        assert nxt.id == "2"


class TestRefinementController:
    def test_planner_error_keeps_plan(self, two_done_plan):
        planner = FakePlanner(refinements=[PlannerError("bad json")])
        refined = RefinementController(planner).maybe_refine(two_done_plan, outcome())
        assert refined is two_done_plan
        assert planner.refinement_calls[0]["pending"] == ["3"]

    def test_not_called_off_cadence(self, two_done_plan):
        two_done_plan.successful_steps = 1
        planner = FakePlanner()
        RefinementController(planner).maybe_refine(two_done_plan, outcome())
        assert planner.refinement_calls == []

    def test_applies_proposal(self, two_done_plan):
        planner = FakePlanner(refinements=[proposal(newSteps=[step("4", depends_on=["3"])])])
        refined = RefinementController(planner).maybe_refine(two_done_plan, outcome())
        assert refined.step_ids() == ["1", "2", "3", "4"]
        assert refined.refinement_rounds == 1
