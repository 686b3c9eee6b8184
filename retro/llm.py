"""LLM provider interface, backend adapters, pricing and retry.

The orchestrator only talks to :class:`LLMProvider`.  Backend quirks such
as OpenAI reasoning models rejecting the system role live in the adapter
that needs them.
"""
from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from retro.errors import ConfigurationError

log = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-5",
    "openai": "gpt-4o",
}

# USD per 1M tokens, matched by model-name prefix (longest prefix wins).
PRICING: dict[str, tuple[float, float]] = {
    "claude-opus": (15.0, 75.0),
    "claude-sonnet": (3.0, 15.0),
    "claude-haiku": (1.0, 5.0),
    "claude": (3.0, 15.0),
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4o": (5.0, 15.0),
    "gpt-4.1": (2.0, 8.0),
    "o1": (15.0, 60.0),
    "o3": (2.0, 8.0),
    "o4-mini": (1.1, 4.4),
    "gpt": (5.0, 15.0),
}
DEFAULT_PRICE = (3.0, 15.0)

REASONING_PREFIXES = ("o1", "o3", "o4")

_FENCE_RE = re.compile(r'```(?:json)?\s*(\{.*\})\s*```', re.DOTALL)


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
            round(self.cost_usd + other.cost_usd, 4),
        )


@dataclass
class ReviewRequest:
    system: str
    user: str
    max_tokens: int = 4096
    expected_output_tokens: int = 500


@dataclass
class ReviewResponse:
    data: dict[str, Any]
    usage: TokenUsage
    model: str


def model_pricing(model: str) -> tuple[float, float]:
    name = (model or "").lower()
    best = ""
    for prefix in PRICING:
        if name.startswith(prefix) and len(prefix) > len(best):
            best = prefix
    return PRICING[best] if best else DEFAULT_PRICE


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    price_in, price_out = model_pricing(model)
    return round(input_tokens / 1_000_000 * price_in + output_tokens / 1_000_000 * price_out, 4)


def estimate_usage(request: ReviewRequest, model: str) -> TokenUsage:
    """Pre-flight estimate: ~4 characters per input token plus the expected output."""
    input_tokens = (len(request.system) + len(request.user)) // 4
    output_tokens = request.expected_output_tokens
    return TokenUsage(input_tokens, output_tokens, calculate_cost(model, input_tokens, output_tokens))


def parse_json_payload(text: str) -> dict[str, Any]:
    text = (text or "").strip()
    m = _FENCE_RE.search(text)
    if m:
        text = m.group(1)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}", retryable=False) from exc
    if not isinstance(data, dict):
        raise LLMCallError(f"LLM returned non-object JSON: {text[:200]}", retryable=False)
    return data


def _wrap_api_error(exc: Exception) -> LLMCallError:
    status = getattr(exc, "status_code", None)
    retryable = status is None or status in (408, 409, 429) or status >= 500
    return LLMCallError(f"LLM API call failed: {exc}", retryable=retryable)


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------


class LLMProvider(ABC):
    name: str = ""

    def __init__(self, model: str):
        self.model = model

    @abstractmethod
    async def generate_review(self, request: ReviewRequest) -> ReviewResponse:
        """Send one prompt and return the parsed JSON payload plus token usage."""

    def cost_for(self, input_tokens: int, output_tokens: int) -> float:
        return calculate_cost(self.model, input_tokens, output_tokens)

    def estimate_cost(self, request: ReviewRequest) -> TokenUsage:
        return estimate_usage(request, self.model)


class AnthropicProvider(LLMProvider):
    name = "anthropic"

    def __init__(self, model: str | None = None, api_key: str | None = None,
                 temperature: float = 0.3):
        super().__init__(model or DEFAULT_MODELS["anthropic"])
        import anthropic
        self.temperature = temperature
        self._client = anthropic.AsyncAnthropic(api_key=api_key) if api_key else anthropic.AsyncAnthropic()

    async def generate_review(self, request: ReviewRequest) -> ReviewResponse:
        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=request.max_tokens,
                temperature=self.temperature,
                system=request.system,
                messages=[{"role": "user", "content": request.user}],
            )
        except Exception as exc:
            raise _wrap_api_error(exc) from exc
        text = "".join(getattr(block, "text", "") for block in response.content)
        usage = TokenUsage(response.usage.input_tokens, response.usage.output_tokens)
        usage.cost_usd = self.cost_for(usage.input_tokens, usage.output_tokens)
        return ReviewResponse(parse_json_payload(text), usage, self.model)


class OpenAIProvider(LLMProvider):
    name = "openai"

    def __init__(self, model: str | None = None, api_key: str | None = None,
                 base_url: str | None = None, temperature: float = 0.3):
        super().__init__(model or DEFAULT_MODELS["openai"])
        import openai
        self.temperature = temperature
        kwargs: dict[str, Any] = {}
        if api_key:
            kwargs["api_key"] = api_key
        if base_url:
            kwargs["base_url"] = base_url
        self._client = openai.AsyncOpenAI(**kwargs)

    @property
    def is_reasoning_model(self) -> bool:
        return self.model.lower().startswith(REASONING_PREFIXES)

    def _request_kwargs(self, request: ReviewRequest) -> dict[str, Any]:
        if self.is_reasoning_model:
            # No system role and no temperature for reasoning models.
            return {
                "model": self.model,
                "max_completion_tokens": request.max_tokens,
                "messages": [{"role": "user", "content": f"{request.system}\n\n{request.user}"}],
            }
        return {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": request.system},
                {"role": "user", "content": request.user},
            ],
        }

    async def generate_review(self, request: ReviewRequest) -> ReviewResponse:
        try:
            response = await self._client.chat.completions.create(**self._request_kwargs(request))
        except Exception as exc:
            raise _wrap_api_error(exc) from exc
        text = response.choices[0].message.content or "{}"
        usage = TokenUsage()
        if response.usage is not None:
            usage.input_tokens = response.usage.prompt_tokens
            usage.output_tokens = response.usage.completion_tokens
        usage.cost_usd = self.cost_for(usage.input_tokens, usage.output_tokens)
        return ReviewResponse(parse_json_payload(text), usage, self.model)


def create_provider(provider: str, model: str | None = None, *, anthropic_api_key: str | None = None,
                    openai_api_key: str | None = None, openai_base_url: str | None = None) -> LLMProvider:
    if provider == "anthropic":
        return AnthropicProvider(model or None, api_key=anthropic_api_key)
    if provider in ("openai", "openai_compatible"):
        return OpenAIProvider(model or None, api_key=openai_api_key, base_url=openai_base_url)
    raise ConfigurationError(f"Unknown LLM provider: {provider!r}")


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


def backoff_delay(attempt: int, base_delay: float, max_delay: float, rng: random.Random | None = None) -> float:
    """Exponential backoff with equal jitter for the given 1-based attempt."""
    delay = min(max_delay, base_delay * 2 ** (attempt - 1))
    rng = rng or random
    return delay / 2 + rng.uniform(0, delay / 2)


async def call_with_retry(provider: LLMProvider, request: ReviewRequest, *, max_retries: int = 3,
                          base_delay: float = 1.0, max_delay: float = 20.0) -> ReviewResponse:
    """Call the provider, retrying retryable failures up to ``max_retries`` attempts."""
    attempt = 1
    while True:
        try:
            return await provider.generate_review(request)
        except LLMCallError as exc:
            if not exc.retryable or attempt >= max_retries:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            log.warning("LLM call failed (attempt %d/%d), retrying in %.1fs: %s",
                        attempt, max_retries, delay, exc)
            await asyncio.sleep(delay)
            attempt += 1
