"""Capability resolution for callers of the research pipeline.

Identity is resolved *outside* the pipeline core.  Entry points hand every
consumer and the orchestrator an already-resolved :class:`Capabilities`
object; this module is the single place that derives it from loaded
user / profile / membership records, or from the automation secret used by
the scheduled dispatcher.

Typical usage::

    from researchflow.core.auth import Capabilities, resolve_service_auth

    caps = Capabilities.from_context({"user": user, "profile": profile,
                                      "membership": membership})
    if not caps.is_admin:
        ...

    result = resolve_service_auth(headers, query, settings.automation_service_secret)
    if result.authorized:
        caps = Capabilities.service()
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final

from researchflow.core.exceptions import AuthError, ConfigError, ForbiddenError

__all__ = [
    "Capabilities",
    "ServiceAuthResult",
    "is_admin",
    "has_active_membership",
    "resolve_service_auth",
    "require_service_auth",
    "SERVICE_SECRET_HEADER",
    "SERVICE_SECRET_QUERY",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Header carrying the automation secret.
SERVICE_SECRET_HEADER: Final[str] = "x-automation-secret"

#: Query parameter accepted as an alternative to the header.
SERVICE_SECRET_QUERY: Final[str] = "automation_secret"

_ADMIN_FLAG_KEYS: Final[tuple[str, ...]] = (
    "is_admin",
    "admin",
    "isAdmin",
    "is_superadmin",
    "superuser",
    "staff",
    "is_staff",
)

_PRIVILEGED_ROLES: Final[frozenset[str]] = frozenset(
    {"admin", "administrator", "superadmin", "owner", "editor", "staff"}
)

_PROFILE_ROLE_KEYS: Final[tuple[str, ...]] = (
    "role",
    "role_name",
    "user_role",
    "roles",
    "role_tags",
    "access_level",
)
_USER_ROLE_KEYS: Final[tuple[str, ...]] = ("app_metadata", "user_metadata")
_MEMBERSHIP_ROLE_KEYS: Final[tuple[str, ...]] = ("role", "roles", "access_level")

_ACTIVE_MEMBERSHIP_STATUSES: Final[frozenset[str]] = frozenset(
    {"active", "trialing", "complimentary"}
)
_EXPIRY_KEYS: Final[tuple[str, ...]] = ("expires_at", "expiresAt", "expires_on")


# ---------------------------------------------------------------------------
# Role collection
# ---------------------------------------------------------------------------


def _collect_roles(value: Any, into: set[str]) -> None:
    if value is None:
        return
    if isinstance(value, str):
        for token in value.replace(",", " ").split():
            into.add(token.strip().lower())
        return
    if isinstance(value, Mapping):
        for nested in value.values():
            _collect_roles(nested, into)
        return
    if isinstance(value, Iterable) and not isinstance(value, bytes):
        for nested in value:
            _collect_roles(nested, into)


def _roles_from(record: Mapping[str, Any] | None, keys: Iterable[str]) -> set[str]:
    roles: set[str] = set()
    if not record:
        return roles
    for key in keys:
        _collect_roles(record.get(key), roles)
    return roles


def _has_admin_flag(record: Mapping[str, Any] | None) -> bool:
    if not record:
        return False
    return any(record.get(key) is True for key in _ADMIN_FLAG_KEYS)


def is_admin(context: Mapping[str, Any]) -> bool:
    """Return ``True`` when the caller holds an administrative capability.

    Explicit boolean flags on any of the three records win; otherwise roles
    are collected recursively (strings are split on whitespace and commas)
    and compared against the privileged set.

    Args:
        context: Mapping with optional ``user``, ``profile`` and
            ``membership`` records.
    """
    user = context.get("user")
    profile = context.get("profile")
    membership = context.get("membership")

    if _has_admin_flag(profile) or _has_admin_flag(membership) or _has_admin_flag(user):
        return True

    roles = (
        _roles_from(profile, _PROFILE_ROLE_KEYS)
        | _roles_from(user, _USER_ROLE_KEYS)
        | _roles_from(membership, _MEMBERSHIP_ROLE_KEYS)
    )
    return not roles.isdisjoint(_PRIVILEGED_ROLES)


def _parse_expiry(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def has_active_membership(context: Mapping[str, Any], now: datetime | None = None) -> bool:
    """Return ``True`` when the caller's membership allows spending.

    Active when the membership status is one of ``active``, ``trialing`` or
    ``complimentary``, or when any expiry field lies in the future.
    """
    membership = context.get("membership")
    if not membership:
        return False
    status = str(membership.get("status") or "").strip().lower()
    if status in _ACTIVE_MEMBERSHIP_STATUSES:
        return True
    current = now or datetime.now(UTC)
    for key in _EXPIRY_KEYS:
        expiry = _parse_expiry(membership.get(key))
        if expiry is not None and expiry > current:
            return True
    return False


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Capabilities:
    """Resolved permissions passed into the pipeline core.

    Attributes:
        is_admin: May trigger stage consumers and operator actions.
        can_spend: May trigger operations that incur provider cost.
    """

    is_admin: bool = False
    can_spend: bool = False

    @classmethod
    def from_context(cls, context: Mapping[str, Any]) -> Capabilities:
        admin = is_admin(context)
        return cls(is_admin=admin, can_spend=admin or has_active_membership(context))

    @classmethod
    def service(cls) -> Capabilities:
        """Capabilities granted to an authenticated automation caller."""
        return cls(is_admin=True, can_spend=True)

    def require_admin(self) -> None:
        """Raise :exc:`ForbiddenError` unless :attr:`is_admin` is set."""
        if not self.is_admin:
            raise ForbiddenError("Admin access required")

    def require_spend(self) -> None:
        """Raise :exc:`ForbiddenError` unless :attr:`can_spend` is set."""
        if not self.can_spend:
            raise ForbiddenError("Active membership required")


# ---------------------------------------------------------------------------
# Service auth
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServiceAuthResult:
    """Outcome of an automation-secret check.

    ``reason`` is ``None`` when authorised.
    """

    authorized: bool
    reason: str | None = None


def resolve_service_auth(
    headers: Mapping[str, str] | None,
    query: Mapping[str, str] | None,
    secret: str | None,
) -> ServiceAuthResult:
    """Check the caller-provided automation secret against *secret*.

    The header is looked up case-insensitively; the query parameter is only
    consulted when the header is absent.  Comparison is constant-time.
    """
    expected = (secret or "").strip()
    if not expected:
        return ServiceAuthResult(False, "Service secret not configured")

    provided = ""
    for name, value in (headers or {}).items():
        if name.lower() == SERVICE_SECRET_HEADER:
            provided = (value or "").strip()
            break
    if not provided:
        provided = ((query or {}).get(SERVICE_SECRET_QUERY) or "").strip()
    if not provided:
        return ServiceAuthResult(False, "Missing automation secret")

    if not hmac.compare_digest(provided.encode(), expected.encode()):
        return ServiceAuthResult(False, "Invalid automation secret")
    return ServiceAuthResult(True)


def require_service_auth(
    headers: Mapping[str, str] | None,
    query: Mapping[str, str] | None,
    secret: str | None,
) -> Capabilities:
    """Return service capabilities or raise the matching error.

    Raises:
        ConfigError: The secret is not configured (500).
        AuthError: The secret is missing or wrong (401).
    """
    result = resolve_service_auth(headers, query, secret)
    if result.authorized:
        return Capabilities.service()
    if result.reason == "Service secret not configured":
        raise ConfigError(result.reason)
    logger.warning("Rejected automation call: %s", result.reason)
    raise AuthError(result.reason or "Unauthorized")
