from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from sticker_cache.completion import (
    MockCompletionService,
    OpenAICompletionService,
    ProviderConfig,
    UnconfiguredCompletionService,
    create_completion_service_from_env,
)
from sticker_cache.errors import CompletionError, InvalidCompletionError
from sticker_cache.prompts import MAX_ANCHOR_CHARS, MAX_STICKERS, build_sticker_messages, parse_sticker_response

PAGE = (
    "A derivative measures the instantaneous rate of change. "
    "The chain rule composes derivatives of nested functions. "
    "Integration by parts reverses the product rule."
)


class _FakeCompletions:
    def __init__(self, outcomes):
        self._outcomes = list(outcomes)
        self.models: list[str] = []

    def create(self, *, model, messages, temperature, max_tokens, response_format):
        self.models.append(model)
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=outcome))],
            usage=SimpleNamespace(prompt_tokens=11, completion_tokens=7, total_tokens=18),
        )


def _client(*outcomes):
    completions = _FakeCompletions(outcomes)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def test_messages_carry_unit_key_and_page_text():
    system, user = build_sticker_messages(unit_key="page-2:en:text_only", unit_content=f"  {PAGE}  ")
    assert system["role"] == "system"
    assert user["role"] == "user"
    assert "Unit: page-2:en:text_only" in user["content"]
    assert f"---\n{PAGE}\n---" in user["content"]


def test_empty_page_is_marked():
    _, user = build_sticker_messages(unit_key="page-1", unit_content="   ")
    assert "(empty page)" in user["content"]


def test_parse_response_trims_and_bounds_stickers():
    items = [{"anchor_text": "x" * 150, "explanation": " why "}] + [
        {"anchor_text": f"term {i}", "explanation": "e"} for i in range(10)
    ]
    text = "Here you go:\n" + json.dumps({"stickers": items}) + "\nDone."
    parsed = parse_sticker_response(text)
    assert len(parsed["stickers"]) == MAX_STICKERS
    assert parsed["stickers"][0] == {"anchor_text": "x" * MAX_ANCHOR_CHARS, "explanation": "why"}


@pytest.mark.parametrize(
    "text",
    ["", "   ", "no json here", "{not json}", '{"stickers": "nope"}', '{"stickers": [{"anchor_text": ""}]}'],
)
def test_parse_response_rejects_unusable_payloads(text):
    with pytest.raises(InvalidCompletionError):
        parse_sticker_response(text)


def test_mock_completion_is_deterministic_and_parseable():
    messages = build_sticker_messages(unit_key="page-1", unit_content=PAGE)
    mock = MockCompletionService()
    first = mock.complete(messages)
    second = mock.complete(messages)
    assert first.text == second.text
    parsed = parse_sticker_response(first.text)
    assert 1 <= len(parsed["stickers"]) <= 3
    assert parsed["stickers"][0]["anchor_text"] in PAGE
    assert first.usage.model == "mock"


def test_openai_service_uses_primary_model():
    client, completions = _client('{"stickers": []}')
    service = OpenAICompletionService(ProviderConfig(api_key="sk-test", model="gpt-4o-mini"), client=client)
    result = service.complete([{"role": "user", "content": "hi"}])
    assert result.text == '{"stickers": []}'
    assert result.usage.total_tokens == 18
    assert result.usage.degraded is False
    assert completions.models == ["gpt-4o-mini"]


def test_openai_service_degrades_to_fallback_model():
    client, completions = _client(TimeoutError("read timeout"), '{"stickers": []}')
    config = ProviderConfig(api_key="sk-test", model="gpt-4o-mini", fallback_model="gpt-3.5-turbo")
    result = OpenAICompletionService(config, client=client).complete([{"role": "user", "content": "hi"}])
    assert completions.models == ["gpt-4o-mini", "gpt-3.5-turbo"]
    assert result.usage.degraded is True
    assert result.usage.degrade_reason == "primary_failed:TimeoutError"
    assert result.usage.model == "gpt-3.5-turbo"


def test_openai_service_wraps_errors():
    client, _ = _client(ConnectionError("refused"))
    service = OpenAICompletionService(ProviderConfig(api_key="sk-test"), client=client)
    with pytest.raises(CompletionError, match="ConnectionError: refused"):
        service.complete([{"role": "user", "content": "hi"}])

    client, _ = _client(TimeoutError("a"), TimeoutError("b"))
    service = OpenAICompletionService(ProviderConfig(api_key="sk-test", fallback_model="m2"), client=client)
    with pytest.raises(CompletionError, match="TimeoutError: b"):
        service.complete([{"role": "user", "content": "hi"}])


def test_provider_config_from_env():
    openai_config = ProviderConfig.from_env(
        {"OPENAI_API_KEY": "sk-x", "LLM_MODEL": "gpt-4o", "LLM_FALLBACK_MODEL": "gpt-4o-mini", "LLM_TIMEOUT_S": "12"}
    )
    assert openai_config.has_credentials
    assert openai_config.model == "gpt-4o"
    assert openai_config.fallback_model == "gpt-4o-mini"
    assert openai_config.timeout_s == 12.0

    ollama_config = ProviderConfig.from_env({"LLM_PROVIDER": "ollama", "OLLAMA_MODEL": "qwen2.5:7b"})
    assert ollama_config.provider == "ollama"
    assert ollama_config.base_url == "http://localhost:11434/v1"
    assert ollama_config.has_credentials

    assert not ProviderConfig.from_env({}).has_credentials


def test_factory_picks_mock_or_real_service():
    assert isinstance(create_completion_service_from_env({"MOCK_LLM_ENABLED": "true", "OPENAI_API_KEY": "sk-x"}), MockCompletionService)
    assert isinstance(create_completion_service_from_env({"OPENAI_API_KEY": "sk-x"}), OpenAICompletionService)


def test_factory_without_credentials_never_falls_back_to_mock():
    service = create_completion_service_from_env({})
    assert isinstance(service, UnconfiguredCompletionService)
    with pytest.raises(CompletionError, match="not configured"):
        service.complete(build_sticker_messages(unit_key="page-1", unit_content=PAGE))
