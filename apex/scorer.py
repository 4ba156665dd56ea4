"""Assessment engine: one LLM call with a deterministic heuristic fallback.

Pipeline
--------
1. Resolve ``LLM_PROVIDER`` / ``LLM_MODEL`` and the provider's API key from
   the secret store.
2. With the default provider and no key configured, skip the network and
   return the heuristic verdict straight away.
3. Otherwise build a strict JSON-only prompt and make exactly one provider
   call (SDK retries are disabled).
4. Strip Markdown code fences from the reply, parse it with
   :func:`parse_or_default`, and fill missing or invalid fields with
   defaults via :func:`validate_result`.

Any provider fault (missing key, network error, non-2xx status, malformed
response shape) or an unparseable reply falls back to
:func:`heuristic_score`. Nothing raised by a provider reaches the caller.

The heuristic maps the mean of the submitted 1-5 ratings to ``0..100``
(``round(mean * 20)``) and buckets it:

- ``>= 80`` -> Strong / Go
- ``>= 60`` -> Workable / Hold
- otherwise -> Weak / No-go
"""
from __future__ import annotations

import abc
import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import anthropic
import openai

from apex.schemas import AssessmentPayload, AssessmentResult, Source
from apex.stores import SecretStore

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed or returned an unusable response."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_PROVIDER = "anthropic"
DEFAULT_MODEL = "claude-3-5-sonnet-20240620"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"

# provider name -> secret holding its API key
API_KEY_SECRETS: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}

TEMPERATURE = 0.1
ANTHROPIC_MAX_TOKENS = 800

TIERS = ("Strong", "Workable", "Weak")
DECISIONS = ("Go", "Hold", "No-go")

HEURISTIC_MARKER = "Heuristic fallback scoring."

FALLBACK_RESULT: dict[str, Any] = {
    "tier": "Workable",
    "go_hold_nogo": "Hold",
    "total_score": 60,
    "analysis": "Fallback result.",
}

PROMPT_TEMPLATE = (
    "Return STRICT JSON only with fields:\n"
    '{"tier":"Strong|Workable|Weak","go_hold_nogo":"Go|Hold|No-go","total_score":0,"analysis":"..."}\n'
    "Deal input: "
)


# ---------------------------------------------------------------------------
# Heuristic scorer
# ---------------------------------------------------------------------------


def compute_verdict(total: int) -> tuple[str, str]:
    """Map a 0-100 score to ``(tier, decision)``."""
    if total >= 80:
        return "Strong", "Go"
    if total >= 60:
        return "Workable", "Hold"
    return "Weak", "No-go"


def compute_total(scores: Mapping[str, float]) -> int:
    """Average the ratings (3 if there are none) and scale to 0-100."""
    values = list(scores.values())
    avg = sum(values) / len(values) if values else 3
    # half-up, not banker's rounding: 77.5 -> 78
    total = math.floor(avg * 20 + 0.5)
    return max(0, min(100, total))


def heuristic_score(scores: Mapping[str, float]) -> AssessmentResult:
    total = compute_total(scores)
    tier, decision = compute_verdict(total)
    return AssessmentResult(
        tier=tier, go_hold_nogo=decision, total_score=total, analysis=HEURISTIC_MARKER,
    )


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

_FENCE_OPEN_RE = re.compile(r"^```(?:json)?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"```$")


def strip_code_fences(text: str) -> str:
    """Remove a leading ```json / ``` fence and a trailing ``` fence."""
    s = text.strip()
    s = _FENCE_OPEN_RE.sub("", s, count=1)
    s = _FENCE_CLOSE_RE.sub("", s, count=1)
    return s.strip()


@dataclass
class ParseResult:
    """Outcome of :func:`parse_or_default`.

    ``ok`` is False when the default was substituted; ``reason`` says why.
    """
    ok: bool
    value: dict[str, Any] = field(default_factory=dict)
    reason: str = ""


def parse_or_default(text: str | None, default: Mapping[str, Any] | None = None) -> ParseResult:
    """Parse provider text as a JSON object, or return *default* tagged as a fallback."""
    fallback = dict(default if default is not None else FALLBACK_RESULT)
    cleaned = strip_code_fences(text or "")
    try:
        value = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        return ParseResult(ok=False, value=fallback, reason=f"invalid JSON: {exc.msg}")
    if not isinstance(value, dict):
        return ParseResult(ok=False, value=fallback, reason=f"expected object, got {type(value).__name__}")
    return ParseResult(ok=True, value=value)


def _match_choice(val: Any, choices: tuple[str, ...], default: str, label: str) -> str:
    lookup = {c.lower(): c for c in choices}
    key = str(val or "").strip().lower()
    if key not in lookup:
        if val is not None:
            log.warning("Unrecognizable %s %r, defaulting to %s", label, val, default)
        return default
    return lookup[key]


def _validate_score(val: Any) -> int:
    if isinstance(val, bool):
        return FALLBACK_RESULT["total_score"]
    try:
        score = float(val)
    except (TypeError, ValueError):
        return FALLBACK_RESULT["total_score"]
    if math.isnan(score) or math.isinf(score):
        return FALLBACK_RESULT["total_score"]
    return max(0, min(100, math.floor(score + 0.5)))


def validate_result(raw: Mapping[str, Any]) -> AssessmentResult:
    """Normalize a parsed LLM response, substituting defaults for missing or invalid fields."""
    analysis = raw.get("analysis")
    return AssessmentResult(
        tier=_match_choice(raw.get("tier"), TIERS, FALLBACK_RESULT["tier"], "tier"),
        go_hold_nogo=_match_choice(
            raw.get("go_hold_nogo"), DECISIONS, FALLBACK_RESULT["go_hold_nogo"], "decision",
        ),
        total_score=_validate_score(raw.get("total_score")),
        analysis=str(analysis).strip() if analysis else FALLBACK_RESULT["analysis"],
    )


def build_prompt(payload: AssessmentPayload) -> str:
    return PROMPT_TEMPLATE + json.dumps(payload.model_dump(), separators=(",", ":"))


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class LLMProvider(abc.ABC):
    """A completion backend. Subclasses implement :meth:`complete`."""

    name = ""

    def __init__(self, model: str):
        self.model = model
        self._client: Any = None
        self._owns_client = False

    @abc.abstractmethod
    async def complete(self, prompt: str) -> str:
        """Return the model's text reply. Raises :class:`LLMCallError` on any fault."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release the underlying HTTP client if this provider created it."""
        if not self._owns_client or self._client is None:
            return
        try:
            await self._client.close()
        except Exception as exc:
            log.warning("Closing %s client failed: %s", self.name, exc)


class AnthropicProvider(LLMProvider):
    """Anthropic messages endpoint; reply text is ``content[0].text``."""

    name = "anthropic"

    def __init__(self, model: str, api_key: str, client: Any = None):
        super().__init__(model)
        self._owns_client = client is None
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)

    async def complete(self, prompt: str) -> str:
        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=ANTHROPIC_MAX_TOKENS,
                temperature=TEMPERATURE,
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as exc:
            raise LLMCallError(f"Anthropic API call failed: {exc}", retryable=True) from exc
        try:
            text = response.content[0].text
        except (AttributeError, IndexError, TypeError) as exc:
            raise LLMCallError(f"Unexpected Anthropic response shape: {exc}") from exc
        if not isinstance(text, str) or not text.strip():
            raise LLMCallError("Anthropic returned an empty completion")
        return text.strip()


class OpenAIProvider(LLMProvider):
    """OpenAI-compatible chat completions; reply text is ``choices[0].message.content``."""

    name = "openai"

    def __init__(self, model: str, api_key: str, client: Any = None, base_url: str | None = None):
        super().__init__(model)
        self._owns_client = client is None
        if client is None:
            kwargs: dict[str, Any] = {"api_key": api_key, "max_retries": 0}
            if base_url:
                kwargs["base_url"] = base_url
            client = openai.AsyncOpenAI(**kwargs)
        self._client = client

    async def complete(self, prompt: str) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                temperature=TEMPERATURE,
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as exc:
            raise LLMCallError(f"OpenAI API call failed: {exc}", retryable=True) from exc
        try:
            text = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as exc:
            raise LLMCallError(f"Unexpected OpenAI response shape: {exc}") from exc
        if not isinstance(text, str) or not text.strip():
            raise LLMCallError("OpenAI returned an empty completion")
        return text.strip()


PROVIDERS: dict[str, type[LLMProvider]] = {
    AnthropicProvider.name: AnthropicProvider,
    OpenAIProvider.name: OpenAIProvider,
}

ProviderFactory = Callable[[str, str, str], LLMProvider]


def make_provider(name: str, model: str, api_key: str) -> LLMProvider:
    cls = PROVIDERS.get(name)
    if cls is None:
        raise LLMCallError(f"Unknown LLM provider: {name!r}")
    return cls(model, api_key)


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


@dataclass
class AssessmentOutcome:
    result: AssessmentResult
    source: Source
    provider: str = ""
    model: str = ""


class LLMClient:
    """Produces an assessment for a deal payload, degrading to the heuristic scorer."""

    def __init__(self, secrets: SecretStore, provider_factory: ProviderFactory | None = None):
        self._secrets = secrets
        self._provider_factory = provider_factory or make_provider

    def _secret(self, name: str) -> str | None:
        secret = self._secrets.get(name)
        return secret.text() if secret else None

    def resolve_config(self) -> tuple[str, str, str | None]:
        """Return ``(provider, model, api_key)`` from the secret store."""
        provider = (self._secret("LLM_PROVIDER") or DEFAULT_PROVIDER).strip().lower()
        default_model = DEFAULT_OPENAI_MODEL if provider == "openai" else DEFAULT_MODEL
        model = self._secret("LLM_MODEL") or default_model
        key_name = API_KEY_SECRETS.get(provider)
        api_key = self._secret(key_name) if key_name else None
        return provider, model, api_key

    def _fallback(self, payload: AssessmentPayload, provider: str, model: str) -> AssessmentOutcome:
        return AssessmentOutcome(
            result=heuristic_score(payload.scores), source="heuristic", provider=provider, model=model,
        )

    async def assess(self, payload: AssessmentPayload) -> AssessmentOutcome:
        provider_name, model, api_key = self.resolve_config()

        if provider_name == DEFAULT_PROVIDER and not api_key:
            log.info("No %s key configured, using heuristic scoring", provider_name)
            return self._fallback(payload, provider_name, model)

        try:
            if not api_key:
                raise LLMCallError(f"Missing {API_KEY_SECRETS.get(provider_name, 'API key')}")
            provider = self._provider_factory(provider_name, model, api_key)
            try:
                text = await provider.complete(build_prompt(payload))
            finally:
                await provider.close()
        except LLMCallError as exc:
            log.warning("LLM assessment failed (%s/%s), using heuristic: %s", provider_name, model, exc)
            return self._fallback(payload, provider_name, model)

        parsed = parse_or_default(text)
        if not parsed.ok:
            log.warning("LLM reply unparseable (%s), using heuristic: %s", parsed.reason, text[:200])
            return self._fallback(payload, provider_name, model)

        return AssessmentOutcome(
            result=validate_result(parsed.value), source="llm", provider=provider_name, model=model,
        )
