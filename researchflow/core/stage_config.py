"""Per-stage model, request and retry configuration.

Each stage consumer receives an explicit :class:`StageConfig` at
construction time instead of reading module-level globals.  The model is
resolved with a fixed precedence:

1. the run's planner override (``run.notes["planner"][<stage>]["model"]``),
2. the stage default from :data:`STAGE_DEFAULTS`,
3. the stage's hard-coded fallback model.

Unknown slugs at any level fall through to the next one; if nothing
resolves, :class:`~researchflow.core.exceptions.ConfigError` is raised before
any item is touched.

Typical usage::

    from researchflow.core.models import StageName
    from researchflow.core.stage_config import resolve_stage_config, compute_cost

    config = resolve_stage_config(StageName.STAGE2, planner=run.planner)
    body = config.request.apply({"messages": [...]})
    tokens_in, tokens_out, cost = compute_cost(config.model, completion["usage"])
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field

from researchflow.core.exceptions import ConfigError
from researchflow.core.models import StageName

__all__ = [
    "ModelProfile",
    "MODEL_REGISTRY",
    "RetrySettings",
    "RequestSettings",
    "StageDefaults",
    "STAGE_DEFAULTS",
    "StageConfig",
    "resolve_model",
    "resolve_stage_config",
    "apply_request_settings",
    "usage_tokens",
    "compute_cost",
    "clamp_int",
    "render_template",
    "DEFAULT_BASE_URLS",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------

#: Default chat-completions base URL per provider.
DEFAULT_BASE_URLS: Final[dict[str, str]] = {
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
}


class ModelProfile(BaseModel):
    """A priced model the pipeline can call.

    Prices are USD per one million tokens.
    """

    model_config = ConfigDict(frozen=True)

    slug: str
    provider: str = "openai"
    model_name: str
    price_in: float = Field(..., ge=0.0)
    price_out: float = Field(..., ge=0.0)
    base_url: str | None = None


#: Known models keyed by planner slug.
MODEL_REGISTRY: Final[dict[str, ModelProfile]] = {
    "4o-mini": ModelProfile(slug="4o-mini", model_name="gpt-4o-mini", price_in=0.15, price_out=0.6),
    "5-mini": ModelProfile(slug="5-mini", model_name="gpt-5-mini", price_in=0.25, price_out=2.0),
    "5": ModelProfile(slug="5", model_name="gpt-5-preview", price_in=1.25, price_out=10.0),
}


def resolve_model(slug: str | None) -> ModelProfile | None:
    """Look up a model by slug, model name, or ``provider/model_name``.

    Returns ``None`` for unknown or empty input.
    """
    if not slug or not isinstance(slug, str):
        return None
    key = slug.strip()
    if key in MODEL_REGISTRY:
        return MODEL_REGISTRY[key]
    for profile in MODEL_REGISTRY.values():
        if key in (profile.model_name, f"{profile.provider}/{profile.model_name}"):
            return profile
        if key == f"openrouter/{profile.model_name}":
            return profile.model_copy(update={"provider": "openrouter"})
    return None


# ---------------------------------------------------------------------------
# Request / retry settings
# ---------------------------------------------------------------------------


class RetrySettings(BaseModel):
    """Retry policy for provider calls."""

    model_config = ConfigDict(frozen=True)

    attempts: int = Field(default=3, ge=1)
    backoff_ms: float = Field(default=500.0, ge=0.0)
    jitter: float = Field(default=0.25, ge=0.0)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> RetrySettings:
        """Unpack loosely-typed retry settings, clamping instead of failing.

        Missing or non-numeric values use the defaults; ``attempts`` is at
        least 1 and ``backoff_ms`` / ``jitter`` at least 0.
        """
        raw = raw or {}
        defaults = cls()
        attempts = _finite(raw.get("attempts"))
        backoff = _finite(raw.get("backoff_ms", raw.get("backoffMs")))
        jitter = _finite(raw.get("jitter"))
        return cls(
            attempts=max(1, int(attempts)) if attempts is not None else defaults.attempts,
            backoff_ms=max(0.0, backoff) if backoff is not None else defaults.backoff_ms,
            jitter=max(0.0, jitter) if jitter is not None else defaults.jitter,
        )


class RequestSettings(BaseModel):
    """Provider request tuning applied on top of a stage's request body."""

    model_config = ConfigDict(frozen=True)

    temperature: float | None = None
    top_p: float | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    max_tokens: int | None = None
    max_output_tokens: int | None = None
    stop_sequences: tuple[str, ...] = ()
    metadata: dict[str, Any] = Field(default_factory=dict)
    cache: dict[str, Any] | None = None

    def apply(self, body: Mapping[str, Any]) -> dict[str, Any]:
        return apply_request_settings(body, self)


_NUMERIC_REQUEST_FIELDS: Final[tuple[str, ...]] = (
    "temperature",
    "top_p",
    "presence_penalty",
    "frequency_penalty",
    "max_tokens",
    "max_output_tokens",
)


def _finite(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float) and math.isfinite(value):
        return float(value)
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def apply_request_settings(
    body: Mapping[str, Any],
    settings: RequestSettings | None,
) -> dict[str, Any]:
    """Return a copy of *body* with *settings* applied.

    * Finite numeric fields are copied as-is.
    * ``stop_sequences`` becomes ``stop`` when non-empty.
    * ``metadata`` is merged over any existing body metadata.
    * ``cache`` is forwarded as ``extra_body.cache``.
    """
    result: dict[str, Any] = dict(body)
    if settings is None:
        return result

    for name in _NUMERIC_REQUEST_FIELDS:
        value = getattr(settings, name)
        if value is not None and math.isfinite(value):
            result[name] = value

    stops = [s for s in settings.stop_sequences if s]
    if stops:
        result["stop"] = stops

    if settings.metadata:
        merged = dict(result.get("metadata") or {})
        merged.update(settings.metadata)
        result["metadata"] = merged

    if settings.cache:
        extra = dict(result.get("extra_body") or {})
        extra["cache"] = dict(settings.cache)
        result["extra_body"] = extra

    return result


# ---------------------------------------------------------------------------
# Stage defaults
# ---------------------------------------------------------------------------


class StageDefaults(BaseModel):
    """Built-in configuration for one stage."""

    model_config = ConfigDict(frozen=True)

    stage: StageName
    default_model: str
    fallback_model: str
    default_limit: int
    max_limit: int
    request: RequestSettings = Field(default_factory=RequestSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)


STAGE_DEFAULTS: Final[dict[StageName, StageDefaults]] = {
    StageName.STAGE1: StageDefaults(
        stage=StageName.STAGE1,
        default_model="4o-mini",
        fallback_model="4o-mini",
        default_limit=8,
        max_limit=25,
        request=RequestSettings(temperature=0.1),
    ),
    StageName.STAGE2: StageDefaults(
        stage=StageName.STAGE2,
        default_model="5-mini",
        fallback_model="5-mini",
        default_limit=4,
        max_limit=15,
        request=RequestSettings(temperature=0.2),
    ),
    StageName.STAGE3: StageDefaults(
        stage=StageName.STAGE3,
        default_model="5",
        fallback_model="5",
        default_limit=2,
        max_limit=6,
        request=RequestSettings(temperature=0.1),
    ),
    StageName.FOCUS: StageDefaults(
        stage=StageName.FOCUS,
        default_model="5",
        fallback_model="5-mini",
        default_limit=3,
        max_limit=10,
        request=RequestSettings(temperature=0.2),
    ),
}


class StageConfig(BaseModel):
    """Fully resolved configuration handed to a stage consumer."""

    model_config = ConfigDict(frozen=True)

    stage: StageName
    model: ModelProfile
    request: RequestSettings
    retry: RetrySettings
    default_limit: int
    max_limit: int

    def clamp_limit(self, requested: Any) -> int:
        """Clamp a caller-supplied batch size to ``[1, max_limit]``."""
        return clamp_int(requested, self.default_limit, 1, self.max_limit)


def resolve_stage_config(
    stage: StageName,
    planner: Mapping[str, Any] | None = None,
    *,
    defaults: Mapping[StageName, StageDefaults] | None = None,
    retry: RetrySettings | None = None,
) -> StageConfig:
    """Resolve the effective configuration for *stage*.

    Args:
        stage: Stage being configured.
        planner: The run's planner block (``run.notes["planner"]``).
        defaults: Stage defaults table; :data:`STAGE_DEFAULTS` when omitted.
        retry: Explicit retry policy overriding the stage default.

    Raises:
        ConfigError: No model could be resolved for the stage.
    """
    table = defaults or STAGE_DEFAULTS
    stage_defaults = table.get(stage)
    if stage_defaults is None:
        raise ConfigError(f"No defaults configured for stage {stage!s}")

    override: Any = None
    if planner:
        stage_block = planner.get(str(stage))
        if isinstance(stage_block, Mapping):
            override = stage_block.get("model")

    model: ModelProfile | None = None
    for candidate in (override, stage_defaults.default_model, stage_defaults.fallback_model):
        model = resolve_model(candidate)
        if model is not None:
            break
        if candidate:
            logger.debug("Stage %s: unknown model %r, trying next candidate.", stage, candidate)
    if model is None:
        raise ConfigError(f"Model configuration missing for {stage!s}")

    return StageConfig(
        stage=stage,
        model=model,
        request=stage_defaults.request,
        retry=retry or stage_defaults.retry,
        default_limit=stage_defaults.default_limit,
        max_limit=stage_defaults.max_limit,
    )


# ---------------------------------------------------------------------------
# Cost
# ---------------------------------------------------------------------------


def usage_tokens(usage: Mapping[str, Any] | None) -> tuple[int, int]:
    """Return ``(prompt_tokens, completion_tokens)`` from a usage block.

    Accepts both chat (``prompt_tokens``) and responses-style
    (``input_tokens``) key names; missing values count as zero.
    """
    if not usage:
        return 0, 0
    prompt = _finite(usage.get("prompt_tokens", usage.get("input_tokens"))) or 0.0
    completion = _finite(usage.get("completion_tokens", usage.get("output_tokens"))) or 0.0
    return int(prompt), int(completion)


def compute_cost(model: ModelProfile, usage: Mapping[str, Any] | None) -> tuple[int, int, float]:
    """Return ``(tokens_in, tokens_out, cost_usd)`` for one call."""
    tokens_in, tokens_out = usage_tokens(usage)
    cost = tokens_in / 1_000_000 * model.price_in + tokens_out / 1_000_000 * model.price_out
    return tokens_in, tokens_out, cost


# ---------------------------------------------------------------------------
# Small shared helpers
# ---------------------------------------------------------------------------


def clamp_int(value: Any, default: int, minimum: int, maximum: int) -> int:
    """Coerce *value* to an int clamped to ``[minimum, maximum]``.

    Non-numeric input yields *default* (also clamped).
    """
    parsed = _finite(value)
    number = int(parsed) if parsed is not None else default
    return max(minimum, min(maximum, number))


_TEMPLATE_TOKEN = re.compile(r"{{\s*([\w.-]+)\s*}}")


def render_template(template: str, tokens: Mapping[str, Any]) -> str:
    """Interpolate ``{{ token }}`` placeholders.

    Missing tokens render as ``""``; list values are concatenated.
    """

    def _replace(match: re.Match[str]) -> str:
        value = tokens.get(match.group(1))
        if value is None:
            return ""
        if isinstance(value, list | tuple):
            return "".join(str(v) for v in value)
        return str(value)

    return _TEMPLATE_TOKEN.sub(_replace, template)
