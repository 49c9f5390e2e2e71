"""Orchestrator module for running a question through the plan engine."""

from stepsql.orchestrator.runtime import PlanRunner, RunResult, build_runner

__all__ = ["PlanRunner", "RunResult", "build_runner"]
