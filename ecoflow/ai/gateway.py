"""
ECO Lifecycle Engine
LLM Gateway for risk scoring.

Routes one chat request along a configured provider chain:
    - Gemini (google-genai), Anthropic, OpenAI, or the offline local stub
    - The first provider that answers wins; failures fall through to the next
    - Each provider has its own circuit breaker: ≥N failures within the
      window pause that provider for a fixed period

All providers failing (or every circuit being open) raises
ServiceUnavailableError.  The gateway never returns a made-up answer.

Usage:
    from ecoflow.ai.gateway import LLMGateway
    gw = LLMGateway.from_config(app.config)
    reply = gw.chat([{"role": "user", "content": "Assess this ECO ..."}], purpose="eco_risk")
"""

import importlib
import json
import logging
import os
import re
import time
from abc import ABC, abstractmethod

from ecoflow.core.exceptions import ServiceUnavailableError

logger = logging.getLogger(__name__)

# ── Circuit breaker defaults ────────────────────────────────────────────────
_CB_FAILURE_THRESHOLD = 5          # failures within window before opening
_CB_WINDOW_SECONDS = 60            # failure counting window (seconds)
_CB_OPEN_DURATION_SECONDS = 30     # how long circuit stays open

_RISK_TEMPERATURE = 0.2
_RISK_MAX_TOKENS = 1024


def _split_system(messages: list) -> tuple[str, list]:
    """Pull system prompts out of *messages*; vendors take them separately."""
    system = [m["content"] for m in messages if m["role"] == "system"]
    rest = [m for m in messages if m["role"] != "system"]
    return "\n\n".join(system), rest


def _import_sdk(module: str, package: str):
    try:
        return importlib.import_module(module)
    except ImportError:
        raise RuntimeError(f"{package} is not installed. Run: pip install 'ecoflow[ai]'")


# ── Providers ────────────────────────────────────────────────────────────────


class LLMProvider(ABC):
    """
    One vendor behind the gateway.

    ``timeout`` (seconds) goes to the SDK client; a per-call ``timeout``
    kwarg from the gateway's deadline budget narrows it further.
    """

    api_key_env: str | None = None

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        self.api_key = api_key or (os.getenv(self.api_key_env, "") if self.api_key_env else "")
        self.timeout = timeout
        self._client = None

    def _client_options(self) -> dict:
        options = {"api_key": self.api_key}
        if self.timeout is not None:
            options["timeout"] = self.timeout
        return options

    def _request_timeout(self, kwargs: dict) -> dict:
        timeout = kwargs.get("timeout", self.timeout)
        return {"timeout": timeout} if timeout is not None else {}

    @abstractmethod
    def chat(self, messages: list, model: str, **kwargs) -> dict:
        """
        Send a chat request.

        Returns:
            dict with keys: content, prompt_tokens, completion_tokens, model
        """
        ...


class AnthropicProvider(LLMProvider):
    api_key_env = "ANTHROPIC_API_KEY"

    def chat(self, messages: list, model: str, **kwargs) -> dict:
        if self._client is None:
            self._client = _import_sdk("anthropic", "anthropic").Anthropic(**self._client_options())
        system, turns = _split_system(messages)
        params = {
            "model": model,
            "messages": turns,
            "max_tokens": kwargs.get("max_tokens", _RISK_MAX_TOKENS),
            "temperature": kwargs.get("temperature", _RISK_TEMPERATURE),
            **self._request_timeout(kwargs),
        }
        if system:
            params["system"] = system
        response = self._client.messages.create(**params)
        return {
            "content": response.content[0].text,
            "prompt_tokens": response.usage.input_tokens,
            "completion_tokens": response.usage.output_tokens,
            "model": model,
        }


class OpenAIProvider(LLMProvider):
    api_key_env = "OPENAI_API_KEY"

    def chat(self, messages: list, model: str, **kwargs) -> dict:
        if self._client is None:
            self._client = _import_sdk("openai", "openai").OpenAI(**self._client_options())
        response = self._client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=kwargs.get("max_tokens", _RISK_MAX_TOKENS),
            temperature=kwargs.get("temperature", _RISK_TEMPERATURE),
            response_format={"type": "json_object"},
            **self._request_timeout(kwargs),
        )
        return {
            "content": response.choices[0].message.content or "",
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "model": model,
        }


class GeminiProvider(LLMProvider):
    """Google Gemini via the google-genai SDK (GEMINI_API_KEY).

    The SDK takes its HTTP timeout in milliseconds, set once on the client.
    """

    api_key_env = "GEMINI_API_KEY"

    def chat(self, messages: list, model: str, **kwargs) -> dict:
        genai = _import_sdk("google.genai", "google-genai")
        types = genai.types
        if self._client is None:
            options = {"api_key": self.api_key}
            if self.timeout is not None:
                options["http_options"] = types.HttpOptions(timeout=int(self.timeout * 1000))
            self._client = genai.Client(**options)

        system, turns = _split_system(messages)
        contents = [
            types.Content(
                role="model" if m["role"] == "assistant" else "user",
                parts=[types.Part(text=m["content"])],
            )
            for m in turns
        ]
        config = types.GenerateContentConfig(
            temperature=kwargs.get("temperature", _RISK_TEMPERATURE),
            max_output_tokens=kwargs.get("max_tokens", _RISK_MAX_TOKENS),
            response_mime_type="application/json",
            system_instruction=system or None,
        )
        response = self._client.models.generate_content(model=model, contents=contents, config=config)
        usage = response.usage_metadata
        return {
            "content": response.text or "",
            "prompt_tokens": getattr(usage, "prompt_token_count", 0) or 0,
            "completion_tokens": getattr(usage, "candidates_token_count", 0) or 0,
            "model": model,
        }


class LocalStubProvider(LLMProvider):
    """
    Deterministic offline scorer for dev/test.

    Scores the last user message by keyword weight: 2 + Σ weights, capped
    at 10.  Same prompt, same answer.
    """

    KEYWORD_WEIGHTS = {
        "emergency": 3,
        "critical": 2,
        "deviation": 2,
        "safety": 2,
        "high": 1,
        "supplier": 1,
        "material": 1,
        "tooling": 1,
    }

    def chat(self, messages: list, model: str = "local-stub", **kwargs) -> dict:
        prompt = next((m["content"] for m in reversed(messages) if m["role"] == "user"), "")
        content = json.dumps(self.assess(prompt))
        return {
            "content": content,
            "prompt_tokens": len(prompt.split()),
            "completion_tokens": len(content.split()),
            "model": "local-stub",
        }

    @classmethod
    def assess(cls, prompt: str) -> dict:
        words = set(re.findall(r"[a-z]+", prompt.lower()))
        hits = sorted(k for k in cls.KEYWORD_WEIGHTS if k in words)
        score = min(10, 2 + sum(cls.KEYWORD_WEIGHTS[k] for k in hits))
        return {
            "riskScore": score,
            "predictedDelay": score * 2 if score > 4 else 0,
            "keyRisks": [f"Change touches {k} considerations" for k in hits][:5]
                        or ["Routine change with limited exposure"],
            "recommendations": ["Confirm affected BOM revisions before release"],
            "impactAreas": ["Production"] + (["Quality"] if score >= 6 else []),
            "overallAssessment": f"Deterministic local assessment: score {score}/10.",
        }


PROVIDER_CLASSES = {
    "gemini": GeminiProvider,
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "local": LocalStubProvider,
}

DEFAULT_MODELS = {
    "gemini": "gemini-2.5-flash",
    "anthropic": "claude-3-5-haiku-20241022",
    "openai": "gpt-4o-mini",
    "local": "local-stub",
}


# ── Circuit breaker ──────────────────────────────────────────────────────────


class CircuitBreaker:
    """
    Failure-count / time-window breaker, one state entry per provider.

    ``clock`` returns seconds; tests pass a fake one.
    """

    def __init__(
        self,
        failure_threshold: int = _CB_FAILURE_THRESHOLD,
        window_seconds: float = _CB_WINDOW_SECONDS,
        open_seconds: float = _CB_OPEN_DURATION_SECONDS,
        clock=time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.open_seconds = open_seconds
        self.clock = clock
        # provider → {"failures": [t, ...], "open_until": t | None}
        self._state: dict[str, dict] = {}

    def _entry(self, name: str) -> dict:
        return self._state.setdefault(name, {"failures": [], "open_until": None})

    def allow(self, name: str) -> bool:
        """True if *name* may be called now; opens the circuit when the threshold is hit."""
        entry = self._entry(name)
        now = self.clock()
        if entry["open_until"] is not None and now < entry["open_until"]:
            logger.warning("Circuit open for provider=%s", name)
            return False

        entry["failures"] = [t for t in entry["failures"] if t >= now - self.window_seconds]
        if len(entry["failures"]) >= self.failure_threshold:
            entry["open_until"] = now + self.open_seconds
            logger.error(
                "Circuit opened for provider=%s: %d failures in %ss window",
                name, len(entry["failures"]), self.window_seconds,
            )
            return False
        return True

    def record_failure(self, name: str) -> None:
        self._entry(name)["failures"].append(self.clock())

    def record_success(self, name: str) -> None:
        entry = self._entry(name)
        entry["failures"].clear()
        entry["open_until"] = None

    def state(self, name: str) -> dict:
        entry = self._entry(name)
        return {"failures": len(entry["failures"]), "open_until": entry["open_until"]}


# ── Gateway ──────────────────────────────────────────────────────────────────


class LLMGateway:
    """
    Provider failover with a per-provider breaker.

    Providers named in *chain* but not available (no API key) are dropped
    with a warning; the local stub is always available.

    ``request_timeout`` is the budget for one ``chat()`` across the whole
    chain.  Each provider call gets what is left of it, so a stalled vendor
    fails inside the budget and counts against its breaker.
    """

    def __init__(
        self,
        providers: dict[str, LLMProvider] | None = None,
        chain: list[str] | None = None,
        *,
        models: dict[str, str] | None = None,
        breaker: CircuitBreaker | None = None,
        request_timeout: float | None = None,
    ):
        self.request_timeout = request_timeout
        if providers is None:
            providers = self._available_providers(request_timeout)
        self._providers = dict(providers)

        requested = list(chain) if chain else list(self._providers)
        self.chain = [name for name in requested if name in self._providers]
        missing = [name for name in requested if name not in self._providers]
        if missing:
            logger.warning("LLM providers not available (no API key?): %s", ", ".join(missing))

        self.models = {**DEFAULT_MODELS, **(models or {})}
        self.breaker = breaker or CircuitBreaker()

    @staticmethod
    def _available_providers(timeout: float | None = None) -> dict[str, LLMProvider]:
        found: dict[str, LLMProvider] = {"local": LocalStubProvider()}
        for name, cls in PROVIDER_CLASSES.items():
            if cls.api_key_env and os.getenv(cls.api_key_env):
                found[name] = cls(timeout=timeout)
        return found

    @classmethod
    def from_config(cls, config) -> "LLMGateway":
        return cls(
            chain=list(config.get("ECO_RISK_PROVIDERS") or ["local"]),
            request_timeout=config.get("ECO_RISK_TIMEOUT_SECONDS"),
            breaker=CircuitBreaker(
                failure_threshold=config.get("ECO_CB_FAILURE_THRESHOLD", _CB_FAILURE_THRESHOLD),
                window_seconds=config.get("ECO_CB_WINDOW_SECONDS", _CB_WINDOW_SECONDS),
                open_seconds=config.get("ECO_CB_OPEN_SECONDS", _CB_OPEN_DURATION_SECONDS),
            ),
        )

    def circuit_state(self, provider_name: str) -> dict:
        return self.breaker.state(provider_name)

    def chat(self, messages: list, *, purpose: str = "", **kwargs) -> dict:
        """
        Send *messages* to the first provider in the chain that answers.

        Returns:
            dict: {content, prompt_tokens, completion_tokens, model,
                   provider, latency_ms, fallback_provider}

        Raises:
            ServiceUnavailableError: every provider failed, is paused, or
                the request budget ran out.
        """
        deadline = time.monotonic() + self.request_timeout if self.request_timeout else None
        last_error = None
        for position, name in enumerate(self.chain):
            call_kwargs = dict(kwargs)
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    last_error = f"{self.request_timeout}s budget spent before {name}"
                    break
                call_kwargs["timeout"] = remaining

            if not self.breaker.allow(name):
                last_error = f"circuit open for {name}"
                continue

            model = self.models.get(name, DEFAULT_MODELS["local"])
            started = time.monotonic()
            try:
                reply = self._providers[name].chat(messages, model, **call_kwargs)
            except Exception as e:
                self.breaker.record_failure(name)
                last_error = f"{name}: {e}"
                logger.warning("LLM call failed provider=%s model=%s purpose=%s: %s", name, model, purpose, e)
                continue

            self.breaker.record_success(name)
            reply["provider"] = name
            reply["latency_ms"] = int((time.monotonic() - started) * 1000)
            reply["fallback_provider"] = name if position > 0 else None
            logger.info(
                "LLM call ok provider=%s model=%s purpose=%s latency_ms=%d",
                name, model, purpose, reply["latency_ms"],
            )
            return reply

        raise ServiceUnavailableError("risk-scoring", last_error or "no providers configured")
