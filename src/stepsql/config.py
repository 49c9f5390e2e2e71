"""Runtime configuration for stepsql.

Settings are plain dataclasses populated from ``STEPSQL_*`` environment
variables. ``load_dotenv_file`` can be used to pull a local ``.env`` into the
environment first; it never overrides variables that are already set.
"""

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_SCHEMA_SERVICE_URL = "http://localhost:3001"
DEFAULT_DB_PATH = "./data/stepsql.duckdb"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass
class EngineConfig:
    """Tuning knobs for the plan execution loop."""

    # Retry controller
    max_retries: int = 3

    # Schema retrieval
    schema_top_k: int = 20

    # Refinement cadence
    refine_every_n: int = 2
    refine_on_empty: bool = True
    large_result_rows: int = 1000
    # Hard stop so a planner that keeps adding steps cannot loop forever
    max_refinement_rounds: int = 10

    # Chart emission
    chart_max_points: int = 20

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from ``STEPSQL_*`` environment variables."""
        return cls(
            max_retries=_env_int("STEPSQL_MAX_RETRIES", 3),
            schema_top_k=_env_int("STEPSQL_SCHEMA_TOP_K", 20),
            refine_every_n=_env_int("STEPSQL_REFINE_EVERY", 2),
            refine_on_empty=_env_bool("STEPSQL_REFINE_ON_EMPTY", True),
            large_result_rows=_env_int("STEPSQL_LARGE_RESULT_ROWS", 1000),
            max_refinement_rounds=_env_int("STEPSQL_MAX_REFINEMENT_ROUNDS", 10),
            chart_max_points=_env_int("STEPSQL_CHART_MAX_POINTS", 20),
        )


def get_schema_service_url() -> str:
    return os.environ.get("STEPSQL_SCHEMA_SERVICE_URL", DEFAULT_SCHEMA_SERVICE_URL).rstrip("/")


def get_db_path() -> Path:
    return Path(os.environ.get("STEPSQL_DB_PATH", DEFAULT_DB_PATH))


def load_dotenv_file(path: Path | str = ".env") -> None:
    """Best-effort env loader to activate API keys in local runs."""
    env_path = Path(path)
    if not env_path.exists():
        return

    for raw in env_path.read_text().splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value
