"""Role-based LLM dispatch.

The engine asks for completions by role, never by model:
- planner: plans, refinements and step fixes (deterministic by default)
- narrator: the final markdown answer (slightly warmer, longer timeout)

Providers are ollama (default, local), anthropic and openai. The hosted SDKs
are optional extras and are imported on first use.

Environment variables:
- STEPSQL_LLM_PROVIDER: ollama | anthropic | openai
- STEPSQL_PLANNER_MODEL / STEPSQL_NARRATOR_MODEL: model per role
- STEPSQL_PLANNER_TEMPERATURE / STEPSQL_NARRATOR_TEMPERATURE
- STEPSQL_ANTHROPIC_API_KEY / STEPSQL_OPENAI_API_KEY (plain
  ANTHROPIC_API_KEY / OPENAI_API_KEY are honoured as well)
"""

import importlib
import importlib.util
import logging
import os
from types import ModuleType
from typing import Any, Callable

from stepsql.llm.ollama_client import ollama_chat

logger = logging.getLogger(__name__)

ROLES = ("planner", "narrator")

DEFAULT_MODELS = {
    "ollama": {"planner": "qwen2.5:14b-instruct", "narrator": "llama3.1:8b"},
    "anthropic": {"planner": "claude-3-5-sonnet-20241022", "narrator": "claude-3-5-haiku-20241022"},
    "openai": {"planner": "gpt-4o", "narrator": "gpt-4o-mini"},
}

DEFAULT_TEMPERATURES = {"planner": 0.0, "narrator": 0.3}

# Narration prompts carry every step's sample rows
NARRATOR_MIN_TIMEOUT = 90

DEFAULT_MAX_TOKENS = 4096
DEFAULT_SYSTEM_PROMPT = "You are a helpful data assistant."


def _api_key(provider: str) -> str:
    name = provider.upper()
    key = os.environ.get(f"STEPSQL_{name}_API_KEY") or os.environ.get(f"{name}_API_KEY")
    if not key:
        label = "OpenAI" if provider == "openai" else provider.capitalize()
        raise ValueError(
            f"{label} API key not found. "
            f"Set STEPSQL_{name}_API_KEY or {name}_API_KEY environment variable."
        )
    return key


def _load_sdk(module_name: str) -> ModuleType:
    try:
        return importlib.import_module(module_name)
    except ImportError:
        raise ImportError(
            f"{module_name} package not installed. "
            f"Install with: pip install 'stepsql[{module_name}]'"
        ) from None


def _call_anthropic(
    messages: list[dict[str, str]],
    model: str,
    temperature: float,
    max_tokens: int | None,
    timeout: int,
) -> str:
    """Claude via the Messages API; the system prompt travels separately."""
    sdk = _load_sdk("anthropic")
    client = sdk.Anthropic(api_key=_api_key("anthropic"), timeout=timeout)

    system = [m["content"] for m in messages if m["role"] == "system"]
    conversation = [m for m in messages if m["role"] != "system"]
    response = client.messages.create(
        model=model,
        system=system[-1] if system else DEFAULT_SYSTEM_PROMPT,
        messages=conversation,
        temperature=temperature,
        max_tokens=max_tokens or DEFAULT_MAX_TOKENS,
    )
    return response.content[0].text


def _call_openai(
    messages: list[dict[str, str]],
    model: str,
    temperature: float,
    max_tokens: int | None,
    timeout: int,
) -> str:
    sdk = _load_sdk("openai")
    client = sdk.OpenAI(api_key=_api_key("openai"), timeout=timeout)
    response = client.chat.completions.create(
        model=model,
        messages=messages,
        temperature=temperature,
        max_tokens=max_tokens or DEFAULT_MAX_TOKENS,
    )
    return response.choices[0].message.content or ""


def _call_ollama(
    messages: list[dict[str, str]],
    model: str,
    temperature: float,
    max_tokens: int | None,
    timeout: int,
) -> str:
    return ollama_chat(
        messages,
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
    )


ProviderCall = Callable[..., str]

_PROVIDERS: dict[str, ProviderCall] = {
    "ollama": _call_ollama,
    "anthropic": _call_anthropic,
    "openai": _call_openai,
}


def resolve_provider(provider: str | None = None) -> str:
    return (provider or os.environ.get("STEPSQL_LLM_PROVIDER", "ollama")).lower()


def resolve_model(role: str, provider: str) -> str:
    defaults = DEFAULT_MODELS.get(provider, DEFAULT_MODELS["ollama"])
    return os.environ.get(f"STEPSQL_{role.upper()}_MODEL", defaults[role])


def resolve_temperature(role: str) -> float:
    raw = os.environ.get(f"STEPSQL_{role.upper()}_TEMPERATURE")
    return DEFAULT_TEMPERATURES[role] if raw is None else float(raw)


def call_llm(
    messages: list[dict[str, str]],
    *,
    role: str = "planner",
    max_tokens: int | None = None,
    timeout: int = 60,
    provider: str | None = None,
    model: str | None = None,
    temperature_override: float | None = None,
) -> str:
    """Send ``messages`` to the model configured for ``role``.

    Args:
        messages: Chat messages with 'role' and 'content'
        role: 'planner' or 'narrator'
        max_tokens: Response token cap (provider default when None)
        timeout: Request timeout in seconds
        provider: Overrides STEPSQL_LLM_PROVIDER
        model: Overrides the role's configured model
        temperature_override: Overrides the role's configured temperature

    Returns:
        Response text

    Raises:
        ValueError: Unknown role or provider, missing API key, or a failed call
    """
    if role not in ROLES:
        raise ValueError(f"Invalid role: {role}. Must be one of: {', '.join(ROLES)}")

    resolved_provider = resolve_provider(provider)
    dispatch = _PROVIDERS.get(resolved_provider)
    if dispatch is None:
        raise ValueError(
            f"Unsupported LLM provider: {resolved_provider}. "
            f"Supported: {', '.join(_PROVIDERS)}"
        )

    role_model = model or resolve_model(role, resolved_provider)
    temperature = resolve_temperature(role) if temperature_override is None else temperature_override
    if role == "narrator":
        timeout = max(timeout, NARRATOR_MIN_TIMEOUT)

    logger.debug("LLM call role=%s provider=%s model=%s", role, resolved_provider, role_model)
    return dispatch(messages, role_model, temperature, max_tokens, timeout)


def get_available_providers() -> list[str]:
    """Ollama, plus each hosted provider whose SDK is installed and key is set."""
    available = ["ollama"]
    for name in ("anthropic", "openai"):
        if importlib.util.find_spec(name) is None:
            continue
        if os.environ.get(f"STEPSQL_{name.upper()}_API_KEY") or os.environ.get(f"{name.upper()}_API_KEY"):
            available.append(name)
    return available


def get_current_config() -> dict[str, Any]:
    provider = resolve_provider()
    return {
        "provider": provider,
        "planner_model": resolve_model("planner", provider),
        "narrator_model": resolve_model("narrator", provider),
        "available_providers": get_available_providers(),
    }
