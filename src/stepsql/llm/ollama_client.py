"""Ollama chat client.

Calls ``POST {base}/api/chat`` without streaming. Connection errors, timeouts
and 5xx answers are retried with exponential backoff; anything else fails
immediately.

Environment variables:
- STEPSQL_OLLAMA_BASE_URL (default http://localhost:11434)
- STEPSQL_OLLAMA_RETRIES: retries after the first attempt (default 2)
- STEPSQL_OLLAMA_NUM_CTX: context window requested per call (default 8192)
"""

import logging
import os
import time
from typing import Any

import requests

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"
BACKOFF_BASE_SECONDS = 0.5


def _backoff(attempt: int) -> float:
    return BACKOFF_BASE_SECONDS * (2 ** attempt)


def build_payload(
    messages: list[dict[str, str]],
    model: str,
    temperature: float,
    max_tokens: int | None,
    json_mode: bool,
) -> dict[str, Any]:
    # Planner prompts carry the schema subset and the execution context;
    # Ollama's default 2048-token window silently truncates them.
    options: dict[str, Any] = {
        "temperature": temperature,
        "num_ctx": int(os.environ.get("STEPSQL_OLLAMA_NUM_CTX", "8192")),
    }
    if max_tokens is not None:
        options["num_predict"] = max_tokens

    payload: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "stream": False,
        "options": options,
    }
    if json_mode:
        payload["format"] = "json"
    return payload


def _message_content(body: Any) -> str:
    message = body.get("message") if isinstance(body, dict) else None
    if not isinstance(message, dict) or "content" not in message:
        raise ValueError(f"Unexpected Ollama response format: {body}")
    return message["content"]


def ollama_chat(
    messages: list[dict[str, str]],
    *,
    model: str,
    temperature: float = 0.0,
    max_tokens: int | None = None,
    timeout: int = 30,
    json_mode: bool = False,
) -> str:
    """Send a chat request to Ollama and return the reply text.

    Raises:
        ConnectionError: Ollama is unreachable after all retries
        ValueError: Timeout after all retries, a non-retryable HTTP error,
            or a reply without message content
    """
    base_url = os.environ.get("STEPSQL_OLLAMA_BASE_URL", DEFAULT_OLLAMA_BASE_URL).rstrip("/")
    retries = int(os.environ.get("STEPSQL_OLLAMA_RETRIES", "2"))
    payload = build_payload(messages, model, temperature, max_tokens, json_mode)

    attempt = 0
    while True:
        try:
            response = requests.post(f"{base_url}/api/chat", json=payload, timeout=timeout)
        except requests.exceptions.ConnectionError as e:
            if attempt >= retries:
                raise ConnectionError(
                    f"Cannot connect to Ollama at {base_url}. "
                    "Start it with `ollama serve` or the Ollama app."
                ) from e
            reason = "connection failed"
        except requests.exceptions.Timeout as e:
            if attempt >= retries:
                raise ValueError(f"Ollama request timed out after {timeout}s (model: {model})") from e
            reason = "timed out"
        else:
            try:
                response.raise_for_status()
            except requests.exceptions.HTTPError as e:
                status = response.status_code
                if not 500 <= status < 600 or attempt >= retries:
                    raise ValueError(f"Ollama API error ({status}): {response.text}") from e
                reason = f"returned {status}"
            else:
                return _message_content(response.json())

        logger.warning("Ollama %s (attempt %d of %d), retrying", reason, attempt + 1, retries + 1)
        time.sleep(_backoff(attempt))
        attempt += 1
