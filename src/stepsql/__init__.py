"""stepsql - multi-step natural-language to SQL plan execution engine."""

__version__ = "0.1.0"
