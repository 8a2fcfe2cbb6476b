"""Content-addressed completion cache.

Provider responses are stored under ``(model_slug, cache_key)`` where the key
embeds a SHA-256 fingerprint of the canonicalised request body.  Two
requests that differ only in key order or serialisation whitespace hash
identically, so a repeated prompt never pays the provider twice.

Write semantics are **first-writer-wins**: :meth:`CompletionCache.store`
inserts with ``ON CONFLICT DO NOTHING`` and re-reads the row, so a writer
that loses a race adopts the winner's payload.  Only an *expired* row is
ever replaced.  Apart from that, rows are immutable except for
``hit_count`` / ``last_hit_at``.

TTL per cache scope is resolved from the environment:

* ``<SCOPE>_CACHE_TTL_MINUTES`` (scope upper-cased, non-alphanumerics → ``_``)
* ``AI_CACHE_TTL_MINUTES``
* the caller's fallback (:data:`DEFAULT_CACHE_TTL_MINUTES`)

Typical usage::

    from researchflow.storage.cache import CompletionCache, build_cache_key, fingerprint

    cache = CompletionCache(conn)
    digest = fingerprint(body)
    key = build_cache_key(["stage1", ticker, "stage1", digest])
    hit = await cache.lookup(model.slug, key)
    if hit is None:
        completion = await provider.complete(model, body)
        hit = await cache.store(model.slug, key, digest, body, completion,
                                completion.get("usage"), ttl_minutes=ttl)
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import os
import re
from collections.abc import Mapping, Sequence
from datetime import timedelta
from typing import Any, Final

import aiosqlite

from researchflow.core import events
from researchflow.core.models import CachedCompletion
from researchflow.storage.repository import Clock, dumps, to_iso, utc_now

__all__ = [
    "DEFAULT_CACHE_TTL_MINUTES",
    "MAX_CACHE_KEY_LENGTH",
    "stable_stringify",
    "fingerprint",
    "build_cache_key",
    "normalize_scope",
    "resolve_cache_ttl_minutes",
    "CompletionCache",
]

logger = logging.getLogger(__name__)

#: One week.
DEFAULT_CACHE_TTL_MINUTES: Final[int] = 10080

#: Cache keys are truncated to this many characters.
MAX_CACHE_KEY_LENGTH: Final[int] = 240

_KEY_WHITESPACE = re.compile(r"\s+")
_KEY_DISALLOWED = re.compile(r"[^a-z0-9:_-]")
_SCOPE_DISALLOWED = re.compile(r"[^A-Z0-9]+")

# ---------------------------------------------------------------------------
# Canonicalisation
# ---------------------------------------------------------------------------


def stable_stringify(value: Any) -> str:
    """Serialise *value* to canonical JSON.

    Object keys are sorted, there is no insignificant whitespace, ``None`` and
    non-finite floats become ``null``, and tuples serialise as arrays.

    Raises:
        TypeError: *value* contains a reference cycle or an unsupported type.
    """
    return _stringify(value, set())


def _stringify(value: Any, seen: set[int]) -> str:
    if value is None or isinstance(value, bool):
        return json.dumps(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return json.dumps(value) if math.isfinite(value) else "null"
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, Mapping | list | tuple):
        marker = id(value)
        if marker in seen:
            raise TypeError("Cannot canonicalise a circular structure")
        seen.add(marker)
        try:
            if isinstance(value, Mapping):
                parts = [
                    f"{json.dumps(str(key), ensure_ascii=False)}:{_stringify(value[key], seen)}"
                    for key in sorted(value, key=str)
                ]
                return "{" + ",".join(parts) + "}"
            return "[" + ",".join(_stringify(item, seen) for item in value) + "]"
        finally:
            seen.discard(marker)
    raise TypeError(f"Cannot canonicalise value of type {type(value).__name__}")


def fingerprint(body: Mapping[str, Any] | None) -> str:
    """SHA-256 hex digest of the canonicalised request body."""
    canonical = stable_stringify(body or {})
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_cache_key(parts: Sequence[Any]) -> str:
    """Join normalised key parts with ``:``.

    Each part is lower-cased, whitespace runs become ``-`` and anything
    outside ``[a-z0-9:_-]`` is dropped; empty parts are skipped.  The result
    is capped at :data:`MAX_CACHE_KEY_LENGTH` characters.
    """
    cleaned: list[str] = []
    for part in parts:
        if part is None:
            continue
        text = _KEY_WHITESPACE.sub("-", str(part).strip().lower())
        text = _KEY_DISALLOWED.sub("", text)
        if text:
            cleaned.append(text)
    return ":".join(cleaned)[:MAX_CACHE_KEY_LENGTH]


# ---------------------------------------------------------------------------
# TTL resolution
# ---------------------------------------------------------------------------


def normalize_scope(scope: str | None) -> str:
    """``"focus-custom"`` → ``"FOCUS_CUSTOM"``; empty → ``"CACHE"``."""
    normalized = _SCOPE_DISALLOWED.sub("_", (scope or "").upper()).strip("_")
    return normalized or "CACHE"


def _positive_minutes(raw: str | None) -> int | None:
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric cache TTL %r.", raw)
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return round(value)


def resolve_cache_ttl_minutes(
    scope: str | None,
    fallback: int = DEFAULT_CACHE_TTL_MINUTES,
    *,
    environ: Mapping[str, str] | None = None,
) -> int:
    """Resolve the TTL for *scope* from the environment.

    Args:
        scope: Cache scope (stage key or focus scope).
        fallback: Minutes used when no override is set.
        environ: Mapping to read from; :data:`os.environ` when omitted.
    """
    env = os.environ if environ is None else environ
    for name in (f"{normalize_scope(scope)}_CACHE_TTL_MINUTES", "AI_CACHE_TTL_MINUTES"):
        minutes = _positive_minutes(env.get(name))
        if minutes is not None:
            return minutes
    return fallback


# ---------------------------------------------------------------------------
# Cache store
# ---------------------------------------------------------------------------


class CompletionCache:
    """Data-access object for ``cached_completions``.

    Args:
        conn: Open :class:`aiosqlite.Connection`.
        clock: Source of "now"; shared with the repository in tests.
    """

    def __init__(self, conn: aiosqlite.Connection, clock: Clock | None = None) -> None:
        self._conn = conn
        self._clock = clock or utc_now

    async def _select(self, model_slug: str, cache_key: str) -> CachedCompletion | None:
        cursor = await self._conn.execute(
            "SELECT * FROM cached_completions WHERE model_slug = ? AND cache_key = ?",
            (model_slug, cache_key),
        )
        row = await cursor.fetchone()
        return CachedCompletion.model_validate(dict(row)) if row is not None else None

    def _is_expired(self, entry: CachedCompletion) -> bool:
        return entry.expires_at is not None and entry.expires_at < self._clock()

    async def lookup(self, model_slug: str, cache_key: str) -> CachedCompletion | None:
        """Return the unexpired entry for the key, purging it if expired."""
        entry = await self._select(model_slug, cache_key)
        if entry is None:
            logger.debug("Cache miss %s/%s", model_slug, cache_key, extra={"event": events.CACHE_MISS})
            return None
        if self._is_expired(entry):
            await self._conn.execute("DELETE FROM cached_completions WHERE id = ?", (entry.id,))
            await self._conn.commit()
            logger.debug(
                "Cache entry %d expired; purged.", entry.id, extra={"event": events.CACHE_EXPIRED}
            )
            return None
        logger.debug("Cache hit %s/%s", model_slug, cache_key, extra={"event": events.CACHE_HIT})
        return entry

    async def store(
        self,
        model_slug: str,
        cache_key: str,
        prompt_hash: str,
        request_body: Mapping[str, Any],
        response_body: Mapping[str, Any],
        usage: Mapping[str, Any] | None,
        *,
        ttl_minutes: int | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> CachedCompletion:
        """Insert a completion unless an unexpired row already exists.

        Returns:
            The authoritative row: the one just written, or the earlier
            writer's row when this call lost the race.
        """
        now = self._clock()
        expires_at = (
            to_iso(now + timedelta(minutes=ttl_minutes)) if ttl_minutes and ttl_minutes > 0 else None
        )

        existing = await self._select(model_slug, cache_key)
        if existing is not None and self._is_expired(existing):
            await self._conn.execute("DELETE FROM cached_completions WHERE id = ?", (existing.id,))

        await self._conn.execute(
            """
            INSERT INTO cached_completions
                (model_slug, cache_key, prompt_hash, request_body, response_body, usage,
                 context, hit_count, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
            ON CONFLICT (model_slug, cache_key) DO NOTHING
            """,
            (
                model_slug,
                cache_key,
                prompt_hash,
                dumps(dict(request_body)),
                dumps(dict(response_body)),
                dumps(dict(usage or {})),
                dumps(dict(context or {})),
                to_iso(now),
                expires_at,
            ),
        )
        await self._conn.commit()

        stored = await self._select(model_slug, cache_key)
        if stored is None:  # pragma: no cover
            raise RuntimeError(f"Cache row {model_slug}/{cache_key} missing after insert")
        if stored.prompt_hash != prompt_hash:
            logger.info(
                "Cache key %s already held a different prompt hash; keeping first writer.",
                cache_key,
            )
        logger.debug("Cache store %s/%s", model_slug, cache_key, extra={"event": events.CACHE_STORE})
        return stored

    async def mark_hit(self, entry_id: int) -> None:
        """Increment the hit counter.  Never raises."""
        try:
            await self._conn.execute(
                """
                UPDATE cached_completions
                SET hit_count = hit_count + 1, last_hit_at = ?
                WHERE id = ?
                """,
                (to_iso(self._clock()), entry_id),
            )
            await self._conn.commit()
        except Exception:  # noqa: BLE001
            logger.warning("Failed to record cache hit for entry %d.", entry_id, exc_info=True)
