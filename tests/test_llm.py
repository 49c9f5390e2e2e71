"""Tests for LLM routing, the Ollama client and JSON parsing."""

import json
import sys
from unittest.mock import MagicMock

import pytest
import requests

from stepsql.llm.client import parse_json_response
from stepsql.llm.ollama_client import ollama_chat
from stepsql.llm.router import call_llm, get_current_config, resolve_model

MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]


class TestParseJsonResponse:
    def test_plain_json(self):
        assert parse_json_response('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        assert parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}

    def test_json_wrapped_in_prose(self):
        text = 'Here is the plan: {"steps": [{"sql": "SELECT \'}\'"}]} Hope it helps.'
        assert parse_json_response(text) == {"steps": [{"sql": "SELECT '}'"}]}

    def test_array_rejected(self):
        with pytest.raises(json.JSONDecodeError):
            parse_json_response("[1, 2]")

    def test_garbage_rejected(self):
        with pytest.raises(json.JSONDecodeError):
            parse_json_response("no json here")


@pytest.fixture
def ollama_calls(clean_env):
    """Capture ollama_chat calls made through the router."""
    calls = []

    def fake_ollama_chat(messages, **kwargs):
        calls.append(kwargs)
        return "ok"

    clean_env.setattr("stepsql.llm.router.ollama_chat", fake_ollama_chat)
    return calls


class TestRouter:
    def test_default_provider_is_ollama(self, ollama_calls):
        assert call_llm(MESSAGES, role="planner") == "ok"
        assert ollama_calls[0]["model"] == "qwen2.5:14b-instruct"
        assert ollama_calls[0]["temperature"] == 0.0

    def test_narrator_role_and_timeout_floor(self, ollama_calls):
        call_llm(MESSAGES, role="narrator", timeout=10)
        assert ollama_calls[0]["model"] == "llama3.1:8b"
        assert ollama_calls[0]["timeout"] == 90
        assert ollama_calls[0]["temperature"] == 0.3

    def test_env_overrides(self, ollama_calls, clean_env):
        clean_env.setenv("STEPSQL_PLANNER_MODEL", "mistral:7b")
        clean_env.setenv("STEPSQL_PLANNER_TEMPERATURE", "0.7")
        call_llm(MESSAGES, role="planner")
        assert ollama_calls[0]["model"] == "mistral:7b"
        assert ollama_calls[0]["temperature"] == 0.7

    def test_explicit_model_and_temperature(self, ollama_calls):
        call_llm(MESSAGES, model="phi3", temperature_override=0.5)
        assert ollama_calls[0]["model"] == "phi3"
        assert ollama_calls[0]["temperature"] == 0.5

    def test_invalid_role(self, ollama_calls):
        with pytest.raises(ValueError, match="Invalid role"):
            call_llm(MESSAGES, role="critic")

    def test_unsupported_provider(self, ollama_calls):
        with pytest.raises(ValueError, match="Unsupported LLM provider"):
            call_llm(MESSAGES, provider="cohere")

    def test_resolve_model_per_provider(self, clean_env):
        assert resolve_model("planner", "openai") == "gpt-4o"
        assert resolve_model("narrator", "anthropic").startswith("claude")

    def test_anthropic_system_prompt_split(self, clean_env):
        clean_env.setenv("ANTHROPIC_API_KEY", "sk-test")
        fake = MagicMock()
        client = fake.Anthropic.return_value
        client.messages.create.return_value.content = [MagicMock(text="claude says hi")]
        clean_env.setitem(sys.modules, "anthropic", fake)

        assert call_llm(MESSAGES, provider="anthropic") == "claude says hi"
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["system"] == "sys"
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
        fake.Anthropic.assert_called_once_with(api_key="sk-test", timeout=60)

    def test_anthropic_requires_key(self, clean_env):
        clean_env.setitem(sys.modules, "anthropic", MagicMock())
        with pytest.raises(ValueError, match="API key not found"):
            call_llm(MESSAGES, provider="anthropic")

    def test_openai_dispatch(self, clean_env):
        clean_env.setenv("STEPSQL_OPENAI_API_KEY", "sk-test")
        fake = MagicMock()
        client = fake.OpenAI.return_value
        client.chat.completions.create.return_value.choices = [
            MagicMock(message=MagicMock(content="gpt says hi"))
        ]
        clean_env.setitem(sys.modules, "openai", fake)

        assert call_llm(MESSAGES, role="narrator", provider="openai") == "gpt says hi"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"

    def test_current_config(self, clean_env):
        clean_env.setenv("STEPSQL_LLM_PROVIDER", "openai")
        config = get_current_config()
        assert config["provider"] == "openai"
        assert config["planner_model"] == "gpt-4o"
        assert "ollama" in config["available_providers"]


def _ollama_response(content="hello", status=200):
    response = MagicMock()
    response.status_code = status
    response.text = "server error"
    response.json.return_value = {"message": {"role": "assistant", "content": content}}
    if status >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(str(status))
    return response


class TestOllamaChat:
    @pytest.fixture(autouse=True)
    def no_sleep(self, clean_env):
        clean_env.setattr("stepsql.llm.ollama_client.time.sleep", lambda seconds: None)

    def test_payload(self, clean_env):
        post = MagicMock(return_value=_ollama_response())
        clean_env.setattr("stepsql.llm.ollama_client.requests.post", post)

        assert ollama_chat(MESSAGES, model="llama3", max_tokens=100, json_mode=True) == "hello"

        args, kwargs = post.call_args
        assert args[0] == "http://localhost:11434/api/chat"
        payload = kwargs["json"]
        assert payload["stream"] is False
        assert payload["format"] == "json"
        assert payload["options"]["num_predict"] == 100
        assert payload["options"]["num_ctx"] == 8192

    def test_retries_server_errors(self, clean_env):
        post = MagicMock(side_effect=[_ollama_response(status=503), _ollama_response("recovered")])
        clean_env.setattr("stepsql.llm.ollama_client.requests.post", post)

        assert ollama_chat(MESSAGES, model="llama3") == "recovered"
        assert post.call_count == 2

    def test_client_error_not_retried(self, clean_env):
        post = MagicMock(return_value=_ollama_response(status=404))
        clean_env.setattr("stepsql.llm.ollama_client.requests.post", post)

        with pytest.raises(ValueError, match="Ollama API error \\(404\\)"):
            ollama_chat(MESSAGES, model="missing-model")
        assert post.call_count == 1

    def test_connection_error_after_retries(self, clean_env):
        clean_env.setenv("STEPSQL_OLLAMA_RETRIES", "1")
        post = MagicMock(side_effect=requests.exceptions.ConnectionError("refused"))
        clean_env.setattr("stepsql.llm.ollama_client.requests.post", post)

        with pytest.raises(ConnectionError, match="Cannot connect to Ollama"):
            ollama_chat(MESSAGES, model="llama3")
        assert post.call_count == 2

    def test_unexpected_format(self, clean_env):
        response = _ollama_response()
        response.json.return_value = {"done": True}
        clean_env.setattr("stepsql.llm.ollama_client.requests.post", MagicMock(return_value=response))

        with pytest.raises(ValueError, match="Unexpected Ollama response format"):
            ollama_chat(MESSAGES, model="llama3")
