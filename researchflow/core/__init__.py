"""Core domain models, settings, capabilities, logging and shared errors."""

from researchflow.core.auth import Capabilities, require_service_auth, resolve_service_auth
from researchflow.core.exceptions import (
    AnswerValidationError,
    AuthError,
    ConfigError,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
    OrchestratorError,
    ProviderError,
    ProviderRequestError,
    ProviderResponseError,
    ResearchflowError,
    RunNotFoundError,
    StageInvocationError,
    StorageError,
)
from researchflow.core.logging_config import JsonFormatter, configure_logging
from researchflow.core.models import (
    FocusRequest,
    ItemStatus,
    Run,
    RunItem,
    RunSchedule,
    RunStatus,
    StageName,
)
from researchflow.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Settings
    "Settings",
    # Capabilities
    "Capabilities",
    "resolve_service_auth",
    "require_service_auth",
    # Domain models
    "Run",
    "RunItem",
    "RunSchedule",
    "FocusRequest",
    "RunStatus",
    "ItemStatus",
    "StageName",
    # Exceptions: base
    "ResearchflowError",
    # Exceptions: config / request
    "ConfigError",
    "InvalidRequestError",
    "AuthError",
    "ForbiddenError",
    "NotFoundError",
    # Exceptions: storage
    "StorageError",
    "RunNotFoundError",
    # Exceptions: provider
    "ProviderError",
    "ProviderRequestError",
    "ProviderResponseError",
    # Exceptions: answers
    "AnswerValidationError",
    # Exceptions: orchestrator
    "OrchestratorError",
    "StageInvocationError",
]
