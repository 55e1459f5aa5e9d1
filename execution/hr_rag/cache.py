"""
Response Cache for RAG Answers

Fingerprints (normalized query, language, organization, filters,
preferences) into a stable key and stores the full response payload with a
TTL. Entries are immutable: a write replaces the whole payload (upsert,
last write wins) and readers receive a fresh copy.

Backends:
- InMemoryCacheBackend: bounded LRU (OrderedDict) with TTL
- PgCacheBackend: `response_cache` table with INSERT ... ON CONFLICT upserts

Cache failures never fail a request: they raise CacheError, which the
orchestrator logs and bypasses.
"""

import json
import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .errors import CacheError

logger = logging.getLogger(__name__)


@dataclass
class CacheConfig:
    """Configuration for the response cache."""
    ttl_seconds: int = 3600
    max_entries: int = 1000


def fingerprint(
    normalized_query: str,
    language: str,
    organization_id: str,
    filters: Optional[dict] = None,
    preferences: Optional[dict] = None,
) -> str:
    """
    Stable cache key over everything that affects a response.

    Canonical JSON (sorted keys, no whitespace) hashed with SHA-256, so
    dict ordering never changes the key.
    """
    payload = {
        "q": normalized_query,
        "lang": language,
        "org": organization_id,
        "filters": filters or {},
        "prefs": preferences or {},
    }
    canonical = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


class CacheBackend(ABC):
    """Storage for serialized cache entries."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the serialized payload if present and unexpired."""

    @abstractmethod
    def put(self, key: str, value: str, ttl_seconds: int, organization_id: str = "") -> None:
        """Upsert a serialized payload."""

    @abstractmethod
    def invalidate_organization(self, organization_id: str) -> int:
        ...


class InMemoryCacheBackend(CacheBackend):
    """Bounded LRU with per-entry expiry."""

    def __init__(self, max_entries: int = 1000, clock=datetime.now):
        self._max_entries = max_entries
        self._clock = clock
        # {key: (serialized payload, expires_at, organization_id)}
        self._entries = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at, _ = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def put(self, key: str, value: str, ttl_seconds: int, organization_id: str = "") -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + timedelta(seconds=ttl_seconds), organization_id)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def invalidate_organization(self, organization_id: str) -> int:
        with self._lock:
            keys = [k for k, (_, _, org) in self._entries.items() if org == organization_id]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def size(self) -> int:
        return len(self._entries)


class PgCacheBackend(CacheBackend):
    """Cache entries in PostgreSQL, sharing the PgVectorStore pool."""

    def __init__(self, store):
        self._store = store

    def get(self, key: str) -> Optional[str]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT payload FROM response_cache WHERE cache_key = %s AND expires_at > now()",
                    (key,),
                )
                row = cur.fetchone()
            if row is None:
                return None
            payload = row[0]
            return payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)

        return self._store._execute_with_retry(_op, "cache_get")

    def put(self, key: str, value: str, ttl_seconds: int, organization_id: str = "") -> None:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO response_cache (cache_key, payload, created_at, expires_at)
                    VALUES (%s, %s::jsonb, now(), now() + make_interval(secs => %s))
                    ON CONFLICT (cache_key) DO UPDATE SET
                        payload = EXCLUDED.payload,
                        created_at = EXCLUDED.created_at,
                        expires_at = EXCLUDED.expires_at
                    """,
                    (key, value, ttl_seconds),
                )
            conn.commit()

        self._store._execute_with_retry(_op, "cache_put")

    def invalidate_organization(self, organization_id: str) -> int:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute("DELETE FROM response_cache WHERE payload->>'organization_id' = %s", (organization_id,))
                deleted = cur.rowcount
            conn.commit()
            return deleted

        return self._store._execute_with_retry(_op, "cache_invalidate")


class ResponseCache:
    """
    Fingerprinted response cache.

    Usage:
        cache = ResponseCache(InMemoryCacheBackend())
        key = fingerprint(query, "ar", org_id, filters, prefs)
        payload = cache.get(key)
        if payload is None:
            payload = compute()
            cache.put(key, payload, organization_id=org_id)
    """

    def __init__(self, backend: Optional[CacheBackend] = None, config: Optional[CacheConfig] = None):
        self.config = config or CacheConfig()
        self.backend = backend or InMemoryCacheBackend(max_entries=self.config.max_entries)

    def get(self, key: str) -> Optional[dict]:
        """
        Look up a payload.

        Returns:
            A fresh copy of the stored payload, or None on miss/expiry

        Raises:
            CacheError: If the backend fails or the entry is unreadable
        """
        try:
            raw = self.backend.get(key)
            if raw is None:
                return None
            payload = json.loads(raw)
        except Exception as e:
            raise CacheError(f"Cache lookup failed: {e}") from e
        logger.info(f"Response cache hit: {key[:12]}...")
        return payload

    def put(self, key: str, payload: dict, organization_id: str = "") -> None:
        """
        Store a complete payload (whole-entry upsert).

        Raises:
            CacheError: If serialization or the backend write fails
        """
        try:
            serialized = json.dumps(
                {**payload, "organization_id": organization_id}, ensure_ascii=False, default=str,
            )
            self.backend.put(key, serialized, self.config.ttl_seconds, organization_id=organization_id)
        except Exception as e:
            raise CacheError(f"Cache write failed: {e}") from e
        logger.debug(f"Cached response {key[:12]}... (ttl={self.config.ttl_seconds}s)")

    def invalidate_organization(self, organization_id: str) -> int:
        """Drop every cached answer of an organization (after its documents change)."""
        try:
            removed = self.backend.invalidate_organization(organization_id)
        except Exception as e:
            raise CacheError(f"Cache invalidation failed: {e}") from e
        if removed:
            logger.info(f"Invalidated {removed} cached responses for organization {organization_id}")
        return removed
