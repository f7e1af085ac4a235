"""
cache.py
--------
AgentForge — Claims Automation Engine — AI result cache
--------------------------------------------------------
Namespaced get/set/invalidate over an optional key-value backend (Redis in
production, anything with the same async surface in tests). Keys come from
ai_control.keys.build_key, so entries live under ``ai:<route>:<hash>``.

Degrade policy:
    The cache must never be the reason an AI call fails. When no store is
    configured, or the store raises, every read is a miss and every write is
    a silent no-op; with_cache() then simply returns fn()'s result with
    cached=False.

Counters:
    cache-hits / cache-sets are kept in-process (lock-guarded, survive store
    outages) and mirrored to the store under ai-stats:* (outside every route's
    key space) for cross-instance dashboards. hit_rate = hits / (hits + sets).

Tenant settings:
    An optional settings reader returns {"enabled": bool, "ttl_seconds": int}
    per org. Disabled tenants bypass the cache entirely (no read, no write).

Project: AgentForge — Claims Automation Engine
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ai_control.keys import build_key, route_prefix
from claims_guidelines import (
    CACHE_DEFAULT_TTL_SECONDS,
    CACHE_MAX_TTL_SECONDS,
    CACHE_STATS_KEYS,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheResult:
    """Value returned by with_cache(): the data plus whether it came from cache."""

    data: Any
    cached: bool
    key: str


class AICache:
    """
    Cache facade over an async key-value store.

    Args:
        store: Object exposing async ``get``, ``set(key, value, ex=)``,
            ``delete``, ``exists``, ``incr`` and async-iterable
            ``scan_iter(match=)`` — e.g. ``redis.asyncio.Redis`` with
            ``decode_responses=True``. ``None`` disables caching.
        default_ttl_seconds: TTL used when neither the caller nor the tenant
            supplies one.
        settings_reader: Optional tenant settings source with an async
            ``get_ai_cache_settings(org_id)`` method.
    """

    def __init__(
        self,
        store: Any = None,
        *,
        default_ttl_seconds: int = CACHE_DEFAULT_TTL_SECONDS,
        settings_reader: Any = None,
    ) -> None:
        self._store = store
        self._default_ttl = default_ttl_seconds
        self._settings_reader = settings_reader
        self._lock = threading.Lock()
        self._hits = 0
        self._sets = 0

    @property
    def available(self) -> bool:
        return self._store is not None

    # ── Counters ─────────────────────────────────────────────────────────────

    def stats(self) -> Dict[str, Any]:
        """In-process counters for this instance."""
        with self._lock:
            hits, sets = self._hits, self._sets
        total = hits + sets
        return {
            "hits": hits,
            "sets": sets,
            "hit_rate": round(hits / total, 4) if total else 0.0,
            "available": self.available,
        }

    def reset_stats(self) -> None:
        with self._lock:
            self._hits = 0
            self._sets = 0

    async def store_stats(self) -> Dict[str, Any]:
        """Counters mirrored in the store (all instances). Zeroes when unavailable."""
        hits = sets = 0
        if self._store is not None:
            try:
                hits = int(await self._store.get(CACHE_STATS_KEYS["hits"]) or 0)
                sets = int(await self._store.get(CACHE_STATS_KEYS["sets"]) or 0)
            except Exception as exc:
                logger.warning("AI cache: could not read store counters: %s", exc)
        total = hits + sets
        return {
            "hits": hits,
            "sets": sets,
            "hit_rate": round(hits / total, 4) if total else 0.0,
        }

    async def _count(self, which: str) -> None:
        with self._lock:
            if which == "hits":
                self._hits += 1
            else:
                self._sets += 1
        if self._store is None:
            return
        try:
            await self._store.incr(CACHE_STATS_KEYS[which])
        except Exception as exc:
            logger.debug("AI cache: counter mirror failed for %s: %s", which, exc)

    # ── TTL / tenant settings ────────────────────────────────────────────────

    def resolve_ttl(self, ttl_seconds: Optional[int] = None, *, image_keyed: bool = False) -> int:
        """
        Pick the effective TTL, clamped to [1, CACHE_MAX_TTL_SECONDS].

        Image-keyed entries (vision calls over uploaded photos) default to the
        30-day maximum because their inputs never change once uploaded.
        """
        if ttl_seconds is None:
            ttl_seconds = CACHE_MAX_TTL_SECONDS if image_keyed else self._default_ttl
        return max(1, min(int(ttl_seconds), CACHE_MAX_TTL_SECONDS))

    async def tenant_settings(self, org_id: Optional[str]) -> Dict[str, Any]:
        """Resolve {"enabled", "ttl_seconds"} for one org; defaults on any failure."""
        settings: Dict[str, Any] = {"enabled": True, "ttl_seconds": None}
        if not org_id or self._settings_reader is None:
            return settings
        try:
            found = await self._settings_reader.get_ai_cache_settings(org_id)
        except Exception as exc:
            logger.warning("AI cache: tenant settings lookup failed for org=%s: %s", org_id, exc)
            return settings
        if found:
            settings["enabled"] = bool(found.get("enabled", True))
            settings["ttl_seconds"] = found.get("ttl_seconds")
        return settings

    # ── Primitive operations ────────────────────────────────────────────────

    async def get(self, key: str) -> Optional[Any]:
        """Return the decoded value, or None on miss / store failure."""
        if self._store is None:
            return None
        try:
            raw = await self._store.get(key)
        except Exception as exc:
            logger.warning("AI cache: get failed for %s — treating as miss: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("AI cache: undecodable entry %s — treating as miss: %s", key, exc)
            return None
        await self._count("hits")
        return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Store *value* as JSON under *key*. Returns False when nothing was written."""
        if self._store is None or value is None:
            return False
        try:
            serialized = json.dumps(value, default=str)
        except (TypeError, ValueError) as exc:
            logger.warning("AI cache: value for %s is not JSON-serializable: %s", key, exc)
            return False
        try:
            await self._store.set(key, serialized, ex=self.resolve_ttl(ttl_seconds))
        except Exception as exc:
            logger.warning("AI cache: set failed for %s: %s", key, exc)
            return False
        await self._count("sets")
        return True

    async def exists(self, key: str) -> bool:
        if self._store is None:
            return False
        try:
            return bool(await self._store.exists(key))
        except Exception as exc:
            logger.warning("AI cache: exists failed for %s: %s", key, exc)
            return False

    async def invalidate(self, key: str) -> bool:
        if self._store is None:
            return False
        try:
            return bool(await self._store.delete(key))
        except Exception as exc:
            logger.warning("AI cache: invalidate failed for %s: %s", key, exc)
            return False

    async def invalidate_by_prefix(self, route_name: str) -> int:
        """Delete every entry of one route. Returns the number of keys removed."""
        if self._store is None:
            return 0
        removed = 0
        try:
            keys = [key async for key in self._store.scan_iter(match=route_prefix(route_name) + "*")]
            for key in keys:
                removed += int(await self._store.delete(key) or 0)
        except Exception as exc:
            logger.warning("AI cache: prefix invalidation failed for route=%s: %s", route_name, exc)
        logger.info("AI cache: invalidated %d entries for route=%s.", removed, route_name)
        return removed

    # ── Read-through wrapper ────────────────────────────────────────────────

    async def with_cache(
        self,
        route_name: str,
        payload: Any,
        fn: Callable[[], Awaitable[Any]],
        *,
        org_id: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        image_keyed: bool = False,
    ) -> CacheResult:
        """
        Return the cached value for (route_name, payload) or compute it with fn().

        A result is cached only after fn() succeeds; exceptions from fn()
        propagate untouched and leave no entry behind.

        Args:
            route_name: Logical AI route.
            payload: Structured input that determines the output.
            fn: Zero-argument coroutine function performing the real work.
            org_id: Tenant whose cache settings apply.
            ttl_seconds: Explicit TTL; overrides the tenant's TTL.
            image_keyed: True for vision calls keyed by uploaded images.

        Returns:
            CacheResult: data, cached flag, and the key used.
        """
        key = build_key(route_name, payload)
        settings = await self.tenant_settings(org_id)
        if not settings["enabled"]:
            return CacheResult(data=await fn(), cached=False, key=key)

        cached = await self.get(key)
        if cached is not None:
            logger.debug("AI cache: hit route=%s key=%s.", route_name, key)
            return CacheResult(data=cached, cached=True, key=key)

        data = await fn()
        effective_ttl = ttl_seconds if ttl_seconds is not None else settings["ttl_seconds"]
        if effective_ttl is None:
            effective_ttl = self.resolve_ttl(image_keyed=image_keyed)
        await self.set(key, data, effective_ttl)
        return CacheResult(data=data, cached=False, key=key)
