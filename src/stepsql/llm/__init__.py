"""LLM access for the planner: provider routing and response parsing."""

from stepsql.llm.client import parse_json_response
from stepsql.llm.router import call_llm, get_current_config

__all__ = ["call_llm", "get_current_config", "parse_json_response"]
