"""
BUILDCREW Router — Model Selection and Dispatch

Routes agent calls to a registered model through a pluggable
backend (LiteLLM by default). Handles model selection, per-model
sliding-window rate limiting, cost budgeting, retries with
exponential backoff, batching, streaming and structured metrics.
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol

import litellm
from loguru import logger
from pydantic import BaseModel, Field
from tenacity import (
    Retrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from buildcrew.config_loader import RouterConfig
from buildcrew.errors import (
    NON_RETRYABLE,
    NotFoundError,
    RateLimitError,
    ValidationFailedError,
)
from buildcrew.models import ModelConfig, ModelRequest, ModelResponse, TokenUsage
from buildcrew.parallel import map_in_groups, run_with_timeout

CHARS_PER_TOKEN = 4
LATENCY_SAMPLE_SIZE = 100
BATCH_GROUP_SIZE = 5


def estimate_tokens(request: ModelRequest) -> int:
    return math.ceil(len(request.prompt_text()) / CHARS_PER_TOKEN)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class ModelBackend(Protocol):
    """Produces text given messages. Everything else is the router's job."""

    def complete(self, model: ModelConfig, request: ModelRequest) -> ModelResponse: ...

    def stream(self, model: ModelConfig, request: ModelRequest) -> Iterator[str]: ...


def _is_o_series_model(model: str) -> bool:
    """OpenAI o-series reasoning models don't support temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("o1", "o3", "o4"))


def _build_kwargs(model: ModelConfig, request: ModelRequest, stream: bool = False) -> dict[str, Any]:
    """Build LiteLLM kwargs with per-model param filtering."""
    provider_model = model.provider_model or model.name
    kwargs: dict[str, Any] = {
        "model": provider_model,
        "messages": request.messages,
        "max_tokens": min(request.max_tokens, model.max_tokens),
    }
    if not _is_o_series_model(provider_model):
        kwargs["temperature"] = request.temperature
    if request.response_format:
        kwargs["response_format"] = request.response_format
    if model.endpoint:
        kwargs["api_base"] = model.endpoint
    if stream:
        kwargs["stream"] = True
    return kwargs


class LiteLLMBackend:
    """Default backend: any provider LiteLLM knows how to reach."""

    def __init__(self):
        litellm.suppress_debug_info = True

    def complete(self, model: ModelConfig, request: ModelRequest) -> ModelResponse:
        response = litellm.completion(**_build_kwargs(model, request))
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return ModelResponse(
            content=choice.message.content or "",
            usage=TokenUsage(
                prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
                total_tokens=getattr(usage, "total_tokens", 0) or 0,
            ),
            model=model.name,
            finish_reason=choice.finish_reason or "stop",
        )

    def stream(self, model: ModelConfig, request: ModelRequest) -> Iterator[str]:
        for chunk in litellm.completion(**_build_kwargs(model, request, stream=True)):
            content = chunk.choices[0].delta.content
            if content:
                yield content


# ---------------------------------------------------------------------------
# Rate limiting & metrics
# ---------------------------------------------------------------------------

class SlidingWindowRateLimiter:
    """At most `requests` calls per key inside any `window` seconds."""

    def __init__(self, requests: int, window: float):
        self.requests = requests
        self.window = window
        self._calls: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def acquire(self, key: str) -> None:
        now = time.monotonic()
        with self._lock:
            calls = self._calls.setdefault(key, deque())
            while calls and calls[0] <= now - self.window:
                calls.popleft()
            if len(calls) >= self.requests:
                raise RateLimitError(
                    f"Rate limit exceeded for model {key}: "
                    f"{self.requests} requests per {self.window:g}s"
                )
            calls.append(now)

    def in_window(self, key: str) -> int:
        now = time.monotonic()
        with self._lock:
            return sum(1 for t in self._calls.get(key, ()) if t > now - self.window)

    def clear(self) -> None:
        with self._lock:
            self._calls.clear()


@dataclass
class UsageRecord:
    requests: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    errors: int = 0
    latency: deque = field(default_factory=lambda: deque(maxlen=LATENCY_SAMPLE_SIZE))


class RouterMetrics(BaseModel):
    requests: int
    tokens_used: int
    cost: float
    errors: int
    latency: list[int]

    @property
    def average_latency_ms(self) -> float:
        return sum(self.latency) / len(self.latency) if self.latency else 0.0


class ModelHealth(BaseModel):
    model: str
    healthy: bool
    latency_ms: int = 0
    error: str | None = None


class ModelRecommendation(BaseModel):
    model: str
    score: float
    reasons: list[str] = Field(default_factory=list)
    estimated_cost: float = 0.0
    estimated_latency_ms: int = 0


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class ModelRouter:
    """
    Backend-agnostic model router.

    Agents call `router.generate_response(request)`.
    The router picks the model, enforces rate and cost limits,
    retries transient failures and returns a ModelResponse.
    """

    def __init__(
        self,
        config: RouterConfig | None = None,
        models: list[ModelConfig] | None = None,
        backend: ModelBackend | None = None,
    ):
        self.config = config or RouterConfig()
        self.backend: ModelBackend = backend or LiteLLMBackend()
        self._models: dict[str, ModelConfig] = {}
        self._models_lock = threading.RLock()
        self._usage = UsageRecord()
        self._usage_lock = threading.Lock()
        self._limiter = SlidingWindowRateLimiter(
            self.config.rate_limit.requests, self.config.rate_limit.window
        )
        for model in models or []:
            self.register_model(model)

    # -- registration -----------------------------------------------------

    def register_model(self, config: ModelConfig) -> None:
        with self._models_lock:
            self._models[config.name] = config
        logger.debug(f"[ROUTER] Registered model {config.name} ({config.max_tokens} ctx)")

    def get_model_configs(self) -> list[ModelConfig]:
        with self._models_lock:
            return list(self._models.values())

    def get_model(self, name: str) -> ModelConfig:
        with self._models_lock:
            model = self._models.get(name)
        if model is None:
            raise NotFoundError(f"Model not registered: {name}")
        return model

    # -- selection --------------------------------------------------------

    def _starting_model(self) -> ModelConfig:
        with self._models_lock:
            if not self._models:
                raise NotFoundError("No models registered")
            if self.config.default_model in self._models:
                return self._models[self.config.default_model]
            for name in self.config.fallback_models:
                if name in self._models:
                    return self._models[name]
            return next(iter(self._models.values()))

    def select_model(self, request: ModelRequest) -> ModelConfig:
        """
        Greedy first-fit selection:
          1. the default model (or first registered fallback)
          2. if its context is too small, the first registered model that fits
          3. if the cost budget would be blown, the first model that keeps it
        Not a global optimizer.
        """
        estimated = estimate_tokens(request)
        selected = self._starting_model()
        candidates = self.get_model_configs()

        if selected.max_tokens < estimated:
            for candidate in candidates:
                if candidate.max_tokens >= estimated:
                    selected = candidate
                    break

        budget = self.config.cost_budget
        if budget is not None:
            with self._usage_lock:
                spent = self._usage.cost
            if spent + estimated * selected.cost_per_token > budget:
                for candidate in candidates:
                    if spent + estimated * candidate.cost_per_token <= budget:
                        selected = candidate
                        break
                else:
                    logger.warning(f"[ROUTER] No model fits the remaining budget; keeping {selected.name}")

        logger.debug(f"[ROUTER] Selected {selected.name} for ~{estimated} tokens")
        return selected

    # -- generation -------------------------------------------------------

    def _rate_limit_key(self, request: ModelRequest) -> str:
        return request.model or self.config.default_model

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(
                multiplier=self.config.retry_backoff,
                min=self.config.retry_backoff,
                max=self.config.retry_backoff_cap,
            ),
            retry=retry_if_not_exception_type(NON_RETRYABLE + (RateLimitError,)),
            before_sleep=lambda state: logger.warning(
                f"[ROUTER] Attempt {state.attempt_number} failed: {state.outcome.exception()}"
            ),
            reraise=True,
        )

    def _attempt(self, model: ModelConfig, request: ModelRequest) -> ModelResponse:
        return run_with_timeout(
            self.backend.complete,
            self.config.timeout,
            model,
            request,
            label=f"model:{model.name}",
        )

    def generate_response(self, request: ModelRequest) -> ModelResponse:
        """Rate-limit, select, call with retries, record metrics."""
        self._limiter.acquire(self._rate_limit_key(request))
        model = self.select_model(request)
        start = time.monotonic()

        try:
            response = self._retrying()(self._attempt, model, request)
        except Exception as e:
            with self._usage_lock:
                self._usage.errors += 1
            logger.error(f"[ROUTER] {model.name} failed: {e}")
            raise

        elapsed_ms = int((time.monotonic() - start) * 1000)
        cost = response.usage.total_tokens * model.cost_per_token

        with self._usage_lock:
            self._usage.requests += 1
            self._usage.tokens_used += response.usage.total_tokens
            self._usage.cost += cost
            self._usage.latency.append(elapsed_ms)

        logger.debug(
            f"[ROUTER] {model.name} complete — "
            f"{response.usage.total_tokens} tokens, ${cost:.4f}, {elapsed_ms}ms"
        )
        return response.model_copy(update={"model": model.name, "latency_ms": elapsed_ms, "cost": cost})

    def generate_streaming_response(self, request: ModelRequest) -> Iterator[str]:
        """Return an iterator of content chunks. Fails before streaming if unsupported."""
        self._limiter.acquire(self._rate_limit_key(request))
        model = self.select_model(request)
        if not model.supports_streaming:
            raise ValidationFailedError(f"Streaming not supported for model: {model.name}")
        logger.debug(f"[ROUTER] Streaming from {model.name}")
        return iter(self.backend.stream(model, request.model_copy(update={"stream": True})))

    def generate_batch_responses(
        self, requests: list[ModelRequest], group_size: int = BATCH_GROUP_SIZE
    ) -> list[ModelResponse]:
        """Run requests in concurrent groups. Failed members become error sentinels."""
        return map_in_groups(
            self.generate_response,
            requests,
            group_size,
            on_error=lambda _request, _exc: ModelResponse(
                content="", model="error", finish_reason="error"
            ),
        )

    # -- health & analysis ------------------------------------------------

    def check_model_health(self, name: str) -> ModelHealth:
        with self._models_lock:
            model = self._models.get(name)
        if model is None:
            return ModelHealth(model=name, healthy=False, error="Model not registered")

        probe = ModelRequest(messages=[{"role": "user", "content": "Hello"}], model=name, max_tokens=10)
        start = time.monotonic()
        try:
            run_with_timeout(self.backend.complete, self.config.timeout, model, probe, label=f"health:{name}")
        except Exception as e:
            return ModelHealth(
                model=name,
                healthy=False,
                latency_ms=int((time.monotonic() - start) * 1000),
                error=str(e),
            )
        return ModelHealth(model=name, healthy=True, latency_ms=int((time.monotonic() - start) * 1000))

    def get_model_recommendations(self, request: ModelRequest) -> list[ModelRecommendation]:
        """Score every registered model for this request. Read-only."""
        estimated = estimate_tokens(request)
        recommendations = []
        for model in self.get_model_configs():
            cost = estimated * model.cost_per_token
            score = 100.0
            reasons: list[str] = []

            if estimated > model.max_tokens:
                score -= 50
                reasons.append("Insufficient token limit")
            score -= min(cost * 1000, 20)
            if request.stream and model.supports_streaming:
                score += 10
                reasons.append("Supports streaming")
            if model.type == "open":
                score += 5
                reasons.append("Open source model")
            if 0 < model.cost_per_token < 0.0002:
                reasons.append("Low cost")

            base_latency = 1000 if model.type == "open" else 500
            recommendations.append(ModelRecommendation(
                model=model.name,
                score=max(0.0, score),
                reasons=reasons,
                estimated_cost=cost,
                estimated_latency_ms=base_latency + estimated * 10,
            ))

        return sorted(recommendations, key=lambda r: r.score, reverse=True)

    def get_metrics(self) -> RouterMetrics:
        with self._usage_lock:
            return RouterMetrics(
                requests=self._usage.requests,
                tokens_used=self._usage.tokens_used,
                cost=self._usage.cost,
                errors=self._usage.errors,
                latency=list(self._usage.latency),
            )

    def shutdown(self) -> None:
        logger.info("[ROUTER] Shutting down")
        with self._models_lock:
            self._models.clear()
        self._limiter.clear()
