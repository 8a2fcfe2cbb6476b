"""Researchflow exception taxonomy.

Every custom exception inherits from :class:`ResearchflowError`.  Exceptions
are organised by architectural layer so callers can catch at the right
granularity, and each class carries an HTTP-equivalent ``status_code`` so a
thin transport (or the CLI) can map failures without a lookup table:

    Layer hierarchy
    ---------------
    ResearchflowError                    500
    ├── ConfigError                      500
    ├── InvalidRequestError              400
    ├── AuthError                        401
    ├── ForbiddenError                   403
    ├── NotFoundError                    404
    ├── StorageError                     500
    │   └── RunNotFoundError             404
    ├── ProviderError                    502
    │   ├── ProviderRequestError
    │   └── ProviderResponseError
    ├── AnswerValidationError            422
    └── OrchestratorError                500
        └── StageInvocationError         502 (or the stage's own status)

Control-flow halts (stop requested, budget exhausted) are **not** exceptions;
they travel as ordinary result values.

Usage:

    from researchflow.core.exceptions import ProviderRequestError

    raise ProviderRequestError("openai", "Model request failed", status_code=503)
"""

from __future__ import annotations

import logging
from typing import Any

__all__ = [
    "ResearchflowError",
    # Config / request
    "ConfigError",
    "InvalidRequestError",
    "AuthError",
    "ForbiddenError",
    "NotFoundError",
    # Storage
    "StorageError",
    "RunNotFoundError",
    # Provider
    "ProviderError",
    "ProviderRequestError",
    "ProviderResponseError",
    # Answers
    "AnswerValidationError",
    # Orchestrator
    "OrchestratorError",
    "StageInvocationError",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class ResearchflowError(Exception):
    """Root exception for all Researchflow errors.

    Attributes:
        status_code: HTTP-equivalent status used when the error reaches an
            entry point.  Subclasses override the class default.
    """

    status_code: int = 500


# ---------------------------------------------------------------------------
# Config / request layer
# ---------------------------------------------------------------------------


class ConfigError(ResearchflowError):
    """Raised when configuration is invalid or incomplete.

    Examples:
        - No API key for the provider a stage model resolves to.
        - A retry policy with fewer than one attempt.
        - The automation secret is not configured for a service call.
    """

    status_code = 500


class InvalidRequestError(ResearchflowError):
    """Raised when an operator request carries unusable input (HTTP 400)."""

    status_code = 400


class AuthError(ResearchflowError):
    """Raised when a caller cannot be authenticated (HTTP 401)."""

    status_code = 401


class ForbiddenError(ResearchflowError):
    """Raised when an authenticated caller lacks a capability (HTTP 403)."""

    status_code = 403


class NotFoundError(ResearchflowError):
    """Raised when referenced data other than a run does not exist (HTTP 404)."""

    status_code = 404


# ---------------------------------------------------------------------------
# Storage layer
# ---------------------------------------------------------------------------


class StorageError(ResearchflowError):
    """Raised when a database or persistence operation fails."""

    status_code = 500


class RunNotFoundError(StorageError):
    """Raised when a run id does not resolve to a stored run.

    Args:
        run_id: The requested run id, or ``None`` when no active run exists.
    """

    status_code = 404

    def __init__(self, run_id: str | None = None) -> None:
        self.run_id = run_id
        if run_id:
            super().__init__(f"Run not found: {run_id!r}")
        else:
            super().__init__("Run not found")


# ---------------------------------------------------------------------------
# Provider layer
# ---------------------------------------------------------------------------


class ProviderError(ResearchflowError):
    """Base class for all LLM provider errors.

    Args:
        provider: Short name of the provider (e.g. ``"openai"``).
        message: Human-readable error description.
    """

    status_code = 502

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class ProviderRequestError(ProviderError):
    """Raised when the provider call fails at the transport or HTTP level.

    Args:
        provider: Short name of the provider.
        message: Human-readable error description.
        status_code: Upstream HTTP status, or ``None`` for transport errors.
        retryable: Whether repeating the identical request may succeed.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        self.upstream_status = status_code
        self.retryable = retryable
        super().__init__(provider, message)


class ProviderResponseError(ProviderError):
    """Raised when the provider answered 2xx but the body is unusable.

    Covers non-JSON bodies and completions without message content.  Never
    retried: the same request tends to produce the same malformed output.
    """


# ---------------------------------------------------------------------------
# Answer validation
# ---------------------------------------------------------------------------


class AnswerValidationError(ResearchflowError):
    """Raised when a completion does not match the stage's answer schema.

    Args:
        stage: Stage identifier (``"stage1"`` … ``"focus"``).
        errors: Human-readable validation messages.
        raw: The parsed (or raw string) payload that failed validation.
    """

    status_code = 422

    def __init__(self, stage: str, errors: list[str], raw: Any = None) -> None:
        self.stage = stage
        self.errors = errors
        self.raw = raw
        super().__init__(f"{stage} answer failed validation: {'; '.join(errors)}")


# ---------------------------------------------------------------------------
# Orchestrator layer
# ---------------------------------------------------------------------------


class OrchestratorError(ResearchflowError):
    """Raised for errors originating in the orchestration layer."""

    status_code = 500


class StageInvocationError(OrchestratorError):
    """Raised when a stage invocation fails during a continue cycle.

    Carries the failing stage's status, the operations completed so far and
    the last known stage metrics so callers can report partial progress.

    Args:
        stage: Stage identifier that failed.
        message: Human-readable error description.
        status_code: HTTP-equivalent status (502 for transport failures).
        details: Error payload reported by the stage, if any.
        operations: Stage operations completed before the failure.
        stage_status: Latest metrics snapshot per stage.
    """

    def __init__(
        self,
        stage: str,
        message: str,
        *,
        status_code: int = 502,
        details: Any = None,
        operations: list[dict[str, Any]] | None = None,
        stage_status: dict[str, Any] | None = None,
    ) -> None:
        self.stage = stage
        self.status_code = status_code
        self.details = details
        self.operations = operations or []
        self.stage_status = stage_status or {}
        super().__init__(f"{stage} failed ({status_code}): {message}")
