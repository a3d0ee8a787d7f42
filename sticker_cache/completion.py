"""
Completion service adapters used by the generation executor.

Degradation chain: primary model -> fallback model -> CompletionError.
The deterministic mock is selected only when MOCK_LLM_ENABLED=true. Without
credentials every call raises CompletionError, so jobs retry and then fail
instead of caching placeholder stickers.

Configuration via environment variables:
  LLM_PROVIDER          = openai | ollama | custom   (default: openai)
  LLM_MODEL             = gpt-4o-mini                (primary model)
  LLM_FALLBACK_MODEL    = gpt-3.5-turbo              (fallback on primary failure)
  LLM_TEMPERATURE       = 0.3
  LLM_TIMEOUT_S         = 60
  OPENAI_API_KEY        = sk-...
  OPENAI_BASE_URL       = https://api.openai.com/v1  (or custom endpoint)
  OLLAMA_BASE_URL       = http://localhost:11434/v1   (Ollama OpenAI-compat endpoint)
  OLLAMA_MODEL          = qwen2.5:7b
  MOCK_LLM_ENABLED      = true                       (force mock mode)
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from sticker_cache.errors import CompletionError
from sticker_cache.runtime_profile import _as_bool

logger = logging.getLogger(__name__)


@dataclass
class CompletionUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0
    degraded: bool = False
    degrade_reason: str = ""


@dataclass
class CompletionResult:
    text: str
    usage: CompletionUsage = field(default_factory=CompletionUsage)


class CompletionService(Protocol):
    def complete(self, messages: list[dict[str, str]]) -> CompletionResult: ...


@dataclass
class ProviderConfig:
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    fallback_model: str = ""
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.3
    max_tokens: int = 2048
    timeout_s: float = 60.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ProviderConfig":
        env = os.environ if environ is None else environ
        provider = env.get("LLM_PROVIDER", "openai").strip().lower()
        fallback = env.get("LLM_FALLBACK_MODEL", "").strip()
        temperature = float(env.get("LLM_TEMPERATURE", "0.3").strip() or "0.3")
        timeout_s = float(env.get("LLM_TIMEOUT_S", "60").strip() or "60")

        if provider == "ollama":
            return cls(
                provider="ollama",
                model=env.get("OLLAMA_MODEL", env.get("LLM_MODEL", "qwen2.5:7b")).strip(),
                fallback_model=fallback,
                api_key=env.get("OPENAI_API_KEY", "ollama").strip() or "ollama",
                base_url=env.get("OLLAMA_BASE_URL", "http://localhost:11434/v1").strip(),
                temperature=temperature,
                timeout_s=timeout_s,
            )

        return cls(
            provider=provider,
            model=env.get("LLM_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini",
            fallback_model=fallback,
            api_key=env.get("OPENAI_API_KEY", "").strip(),
            base_url=env.get("OPENAI_BASE_URL", "").strip(),
            temperature=temperature,
            timeout_s=timeout_s,
        )

    @property
    def has_credentials(self) -> bool:
        if self.provider == "ollama":
            return bool(self.base_url)
        return bool(self.api_key)


def _create_client(config: ProviderConfig) -> Any:
    try:
        import openai
    except ImportError as exc:
        raise RuntimeError("openai package is required for the real completion service") from exc

    kwargs: dict[str, Any] = {"timeout": config.timeout_s, "max_retries": 0}
    if config.api_key:
        kwargs["api_key"] = config.api_key
    if config.base_url:
        kwargs["base_url"] = config.base_url
    if config.provider == "ollama" and "api_key" not in kwargs:
        kwargs["api_key"] = "ollama"
    return openai.OpenAI(**kwargs)


class OpenAICompletionService:
    """OpenAI-compatible chat completions with primary -> fallback degradation."""

    def __init__(self, config: ProviderConfig, *, client: Any | None = None) -> None:
        self._config = config
        self._client = client

    @property
    def config(self) -> ProviderConfig:
        return self._config

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = _create_client(self._config)
        return self._client

    def _call_chat(self, *, model: str, messages: list[dict[str, str]]) -> CompletionResult:
        t0 = time.monotonic()
        response = self._get_client().chat.completions.create(
            model=model,
            messages=messages,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
            response_format={"type": "json_object"},
        )
        elapsed_ms = (time.monotonic() - t0) * 1000
        text = response.choices[0].message.content or ""
        usage_data = response.usage
        usage = CompletionUsage(
            prompt_tokens=getattr(usage_data, "prompt_tokens", 0) if usage_data else 0,
            completion_tokens=getattr(usage_data, "completion_tokens", 0) if usage_data else 0,
            total_tokens=getattr(usage_data, "total_tokens", 0) if usage_data else 0,
            model=model,
            latency_ms=round(elapsed_ms, 1),
        )
        return CompletionResult(text=text, usage=usage)

    def complete(self, messages: list[dict[str, str]]) -> CompletionResult:
        try:
            return self._call_chat(model=self._config.model, messages=messages)
        except Exception as primary_exc:
            if not self._config.fallback_model:
                raise CompletionError(f"{type(primary_exc).__name__}: {primary_exc}") from primary_exc
            logger.warning(
                "completion_primary_failed model=%s error=%s fallback=%s",
                self._config.model,
                type(primary_exc).__name__,
                self._config.fallback_model,
            )
            try:
                result = self._call_chat(model=self._config.fallback_model, messages=messages)
            except Exception as fallback_exc:
                raise CompletionError(f"{type(fallback_exc).__name__}: {fallback_exc}") from fallback_exc
            result.usage.degraded = True
            result.usage.degrade_reason = f"primary_failed:{type(primary_exc).__name__}"
            return result


_PHRASE_RE = re.compile(r"[^.\n;:!?]{12,}")


def _deterministic_int(seed: str, modulo: int) -> int:
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % max(1, modulo)


class MockCompletionService:
    """Deterministic stand-in: the same page text always yields the same stickers."""

    def __init__(self, *, max_stickers: int = 3) -> None:
        self._max_stickers = max(1, max_stickers)

    def complete(self, messages: list[dict[str, str]]) -> CompletionResult:
        page_text = messages[-1]["content"] if messages else ""
        if "---" in page_text:
            parts = page_text.split("---")
            if len(parts) >= 3:
                page_text = parts[1]
        phrases = [p.strip() for p in _PHRASE_RE.findall(page_text) if p.strip()]
        if not phrases:
            phrases = [page_text.strip()[:100] or "Page content"]
        count = 1 + _deterministic_int(page_text, min(self._max_stickers, len(phrases)))
        stickers = [
            {
                "anchor_text": phrase[:100],
                "explanation": f"**{phrase[:60]}**: key idea on this page, restated for review.",
            }
            for phrase in phrases[:count]
        ]
        text = json.dumps({"stickers": stickers}, ensure_ascii=False)
        usage = CompletionUsage(
            prompt_tokens=sum(len(m.get("content", "")) for m in messages) // 4,
            completion_tokens=len(text) // 4,
            model="mock",
        )
        usage.total_tokens = usage.prompt_tokens + usage.completion_tokens
        return CompletionResult(text=text, usage=usage)


class UnconfiguredCompletionService:
    def __init__(self, *, provider: str = "openai") -> None:
        self._provider = provider

    def complete(self, messages: list[dict[str, str]]) -> CompletionResult:
        raise CompletionError(f"completion service not configured: provider={self._provider} has no credentials")


def create_completion_service_from_env(environ: Mapping[str, str] | None = None) -> CompletionService:
    env = os.environ if environ is None else environ
    if _as_bool(env.get("MOCK_LLM_ENABLED", "false")):
        return MockCompletionService()
    config = ProviderConfig.from_env(env)
    if not config.has_credentials:
        logger.warning("completion_service_unconfigured provider=%s", config.provider)
        return UnconfiguredCompletionService(provider=config.provider)
    return OpenAICompletionService(config)
