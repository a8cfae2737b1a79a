"""
cache/store.py -- Redis-backed shared cache for sessions and token revocation.

Sessions and revocation entries must be visible to every API process, so this
wraps a synchronous redis-py client rather than a per-process store. Every
entry written here carries a native TTL; nothing relies on a sweeper to expire.

Key layout (owned by the callers, not by this module):
    session:<id>                 JSON session record
    sessions:identity:<id>       set of session ids for one identity
    jwt:blacklist:<jti>          "revoked"

Usage:
    cache = CacheStore.from_url("redis://localhost:6379/0", timeout=2.0)
    cache.set_json("session:abc", {...}, ttl=1800)
    cache.get_json("session:abc")        # returns dict or None
    cache.set("jwt:blacklist:123", "revoked", ttl=600)

Tests inject fakeredis.FakeRedis(decode_responses=True) through the
constructor.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator

from redis import Redis

logger = logging.getLogger("ledgergate.cache")


class CacheStore:
    def __init__(self, client: Redis) -> None:
        # client must be created with decode_responses=True
        self.client = client

    @classmethod
    def from_url(cls, url: str, timeout: float = 5.0) -> "CacheStore":
        """Build a store whose every command is bounded by `timeout` seconds."""
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client)

    def ping(self) -> bool:
        return bool(self.client.ping())

    # ------------------------------------------------------------------
    # Scalar values
    # ------------------------------------------------------------------

    def get(self, key: str) -> str | None:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl: int) -> None:
        """Store value under key for ttl seconds. ttl must be positive."""
        self.client.set(key, value, ex=ttl)

    def exists(self, key: str) -> bool:
        return self.client.exists(key) > 0

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return self.client.delete(*keys)

    def expire(self, key: str, ttl: int) -> bool:
        return bool(self.client.expire(key, ttl))

    # ------------------------------------------------------------------
    # JSON documents
    # ------------------------------------------------------------------

    def get_json(self, key: str) -> dict | None:
        """Return the decoded document, or None if absent or unreadable.

        An unreadable document is deleted so the next write starts clean.
        """
        raw = self.client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding corrupt cache entry %s", key)
            self.client.delete(key)
            return None

    def set_json(self, key: str, data: dict, ttl: int) -> None:
        self.client.set(key, json.dumps(data), ex=ttl)

    # ------------------------------------------------------------------
    # Sets (per-identity indexes)
    # ------------------------------------------------------------------

    def add_member(self, key: str, member: str, ttl: int) -> None:
        """Add member to the set at key and push the set's TTL to at least ttl."""
        self.client.sadd(key, member)
        # ttl() is -1 for a key without expiry
        if self.client.ttl(key) < ttl:
            self.client.expire(key, ttl)

    def remove_member(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return self.client.srem(key, *members)

    def members(self, key: str) -> set[str]:
        return set(self.client.smembers(key))

    # ------------------------------------------------------------------
    # Scans (metrics and cleanup only)
    # ------------------------------------------------------------------

    def scan(self, pattern: str) -> Iterator[str]:
        """Iterate keys matching pattern. Cost grows with the keyspace."""
        yield from self.client.scan_iter(match=pattern, count=500)

    def close(self) -> None:
        self.client.close()
