"""HTTP API for stepsql."""

from stepsql.api.server import create_app

__all__ = ["create_app"]
