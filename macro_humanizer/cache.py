"""
Content-addressed cache for the macro humanizer.

Keys are derived from content, not from arbitrary names:
- mcr:commands:<sha256 of file bytes>        parsed command lists
- mcr:patterns:<sha256 of sorted file hashes> pattern analysis results
- image:analysis:<image id>                   UI element analysis
- pattern:usage:<pattern id>                  best-effort usage counters

The cache is strictly an optimization. Every backend failure is turned into
an explicit "unavailable" result for reads and a no-op for writes, so an
operation always completes with a fresh computation when the backend is down.
"""

import fnmatch
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import text

from .command_model import Command, commands_to_dicts, commands_from_dicts
from .const import (
    CACHE_PREFIX_COMMANDS,
    CACHE_PREFIX_IMAGE,
    CACHE_PREFIX_PATTERNS,
    CACHE_PREFIX_USAGE,
    DEFAULT_CACHE_TTL,
    TABLE_CACHE,
)
from .database import DatabaseConnector
from .errors import CacheUnavailable

_LOGGER = logging.getLogger(__name__)


# ============================================================================
# Result Type
# ============================================================================

@dataclass(frozen=True)
class CacheResult:
    """
    Outcome of a cache read.

    status is one of "hit", "miss" or "unavailable". Callers branch on
    `is_hit` and recompute otherwise; `error` explains an unavailable read.
    """
    status: str
    value: Any = None
    error: Optional[str] = None

    HIT = "hit"
    MISS = "miss"
    UNAVAILABLE = "unavailable"

    @classmethod
    def hit(cls, value) -> "CacheResult":
        return cls(cls.HIT, value)

    @classmethod
    def miss(cls) -> "CacheResult":
        return cls(cls.MISS)

    @classmethod
    def unavailable(cls, error: str) -> "CacheResult":
        return cls(cls.UNAVAILABLE, error=error)

    @property
    def is_hit(self) -> bool:
        return self.status == self.HIT

    @property
    def is_unavailable(self) -> bool:
        return self.status == self.UNAVAILABLE

    def value_or(self, default):
        return self.value if self.is_hit else default


# ============================================================================
# Backends
# ============================================================================

class MemoryCacheBackend:
    """
    In-process backend with TTL eviction on read.

    Args:
        clock: Time source in seconds (injectable for tests)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl: Optional[int]):
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._entries[key] = (value, expires_at)

    def incr(self, key: str) -> int:
        with self._lock:
            value, expires_at = self._entries.get(key, ("0", None))
            if expires_at is not None and expires_at <= self._clock():
                value, expires_at = "0", None
            count = int(value) + 1
            self._entries[key] = (str(count), expires_at)
            return count

    def delete_matching(self, pattern: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def clear(self):
        with self._lock:
            self._entries.clear()


class SqlCacheBackend:
    """
    Cache entries in a database table, shared between processes.

    Args:
        db: DatabaseConnector
        clock: Wall-clock time source in seconds
    """

    def __init__(self, db: DatabaseConnector, clock: Callable[[], float] = time.time):
        self.db = db
        self._clock = clock

    def initialize_schema(self):
        with self.db.get_connection() as conn:
            conn.execute(text(f"""
                CREATE TABLE IF NOT EXISTS {TABLE_CACHE} (
                    cache_key VARCHAR(512) PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL
                )
            """))
            conn.commit()

    def get(self, key: str) -> Optional[str]:
        with self.db.get_connection() as conn:
            row = conn.execute(
                text(f"SELECT value, expires_at FROM {TABLE_CACHE} WHERE cache_key = :key"),
                {"key": key},
            ).fetchone()

        if row is None:
            return None
        if row[1] is not None and row[1] <= self._clock():
            return None
        return row[0]

    def set(self, key: str, value: str, ttl: Optional[int]):
        expires_at = self._clock() + ttl if ttl else None
        with self.db.get_connection() as conn:
            # Last writer wins
            conn.execute(text(f"DELETE FROM {TABLE_CACHE} WHERE cache_key = :key"), {"key": key})
            conn.execute(text(f"""
                INSERT INTO {TABLE_CACHE} (cache_key, value, expires_at)
                VALUES (:key, :value, :expires_at)
            """), {"key": key, "value": value, "expires_at": expires_at})
            conn.commit()

    def incr(self, key: str) -> int:
        with self.db.get_connection() as conn:
            row = conn.execute(
                text(f"SELECT value, expires_at FROM {TABLE_CACHE} WHERE cache_key = :key"),
                {"key": key},
            ).fetchone()
            if row is not None and row[1] is not None and row[1] <= self._clock():
                row = None
            count = (int(row[0]) if row else 0) + 1
            expires_at = row[1] if row else None
            conn.execute(text(f"DELETE FROM {TABLE_CACHE} WHERE cache_key = :key"), {"key": key})
            conn.execute(text(f"""
                INSERT INTO {TABLE_CACHE} (cache_key, value, expires_at)
                VALUES (:key, :value, :expires_at)
            """), {"key": key, "value": str(count), "expires_at": expires_at})
            conn.commit()
        return count

    def delete_matching(self, pattern: str) -> int:
        with self.db.get_connection() as conn:
            keys = [row[0] for row in conn.execute(text(f"SELECT cache_key FROM {TABLE_CACHE}"))]
            matched = [k for k in keys if fnmatch.fnmatchcase(k, pattern)]
            for key in matched:
                conn.execute(text(f"DELETE FROM {TABLE_CACHE} WHERE cache_key = :key"), {"key": key})
            conn.commit()
        return len(matched)

    def clear(self):
        with self.db.get_connection() as conn:
            conn.execute(text(f"DELETE FROM {TABLE_CACHE}"))
            conn.commit()


# ============================================================================
# Hash Utilities
# ============================================================================

def content_hash(content) -> str:
    """SHA-256 hex digest of file bytes (text is UTF-8 encoded first)."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def file_set_hash(file_hashes: Iterable[str]) -> str:
    """Order-independent hash of a set of file hashes."""
    joined = ":".join(sorted(file_hashes))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


# ============================================================================
# Main Cache Class
# ============================================================================

class ContentCache:
    """
    Fail-open cache facade.

    Args:
        backend: MemoryCacheBackend, SqlCacheBackend or None (caching off)
        default_ttl: Seconds before entries expire (default 24h)
    """

    def __init__(self, backend=None, default_ttl: int = DEFAULT_CACHE_TTL):
        self.backend = backend
        self.default_ttl = default_ttl

    @property
    def enabled(self) -> bool:
        return self.backend is not None

    # ========================================================================
    # Generic Operations
    # ========================================================================

    def get(self, key: str) -> CacheResult:
        """Read and JSON-decode a value."""
        try:
            raw = self._call("get", key)
        except CacheUnavailable as e:
            return CacheResult.unavailable(str(e))

        if raw is None:
            return CacheResult.miss()
        try:
            return CacheResult.hit(json.loads(raw))
        except ValueError as e:
            _LOGGER.debug(f"Discarding undecodable cache entry {key}: {e}")
            return CacheResult.miss()

    def set(self, key: str, value, ttl: Optional[int] = None) -> bool:
        """
        JSON-encode and store a value.

        Returns:
            True if the backend accepted the write
        """
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            _LOGGER.debug(f"Value for {key} is not cacheable: {e}")
            return False

        try:
            self._call("set", key, payload, self.default_ttl if ttl is None else ttl)
        except CacheUnavailable:
            return False
        return True

    def invalidate(self, pattern: str) -> int:
        """Delete every key matching a glob pattern, e.g. 'mcr:*:<hash>*'."""
        try:
            return self._call("delete_matching", pattern)
        except CacheUnavailable:
            return 0

    def clear_all(self) -> bool:
        try:
            self._call("clear")
        except CacheUnavailable:
            return False
        return True

    def _call(self, method: str, *args):
        """Run a backend call, converting any backend failure to CacheUnavailable."""
        if self.backend is None:
            raise CacheUnavailable("no cache backend configured")
        try:
            return getattr(self.backend, method)(*args)
        except Exception as e:
            _LOGGER.debug(f"Cache {method} failed, continuing without cache: {e}")
            raise CacheUnavailable(str(e)) from e

    # ========================================================================
    # Parsed Commands
    # ========================================================================

    def get_cached_commands(self, file_hash: str) -> CacheResult:
        result = self.get(f"{CACHE_PREFIX_COMMANDS}{file_hash}")
        if not result.is_hit:
            return result
        try:
            return CacheResult.hit(commands_from_dicts(result.value))
        except (KeyError, TypeError, ValueError) as e:
            _LOGGER.debug(f"Ignoring malformed cached commands for {file_hash[:12]}: {e}")
            return CacheResult.miss()

    def cache_commands(self, file_hash: str, commands: List[Command]) -> bool:
        return self.set(f"{CACHE_PREFIX_COMMANDS}{file_hash}", commands_to_dicts(commands))

    def invalidate_file(self, file_hash: str) -> int:
        return self.invalidate(f"mcr:*:{file_hash}*")

    # ========================================================================
    # Pattern Analysis
    # ========================================================================

    def get_cached_pattern_analysis(self, file_hashes: Iterable[str]) -> CacheResult:
        return self.get(f"{CACHE_PREFIX_PATTERNS}{file_set_hash(file_hashes)}")

    def cache_pattern_analysis(self, file_hashes: Iterable[str], analysis) -> bool:
        return self.set(f"{CACHE_PREFIX_PATTERNS}{file_set_hash(file_hashes)}", analysis)

    def invalidate_pattern_analysis(self) -> int:
        """Drop every cached mining result, e.g. after stored patterns change."""
        return self.invalidate(f"{CACHE_PREFIX_PATTERNS}*")

    # ========================================================================
    # Image Analysis
    # ========================================================================

    def get_cached_image_analysis(self, image_id: str) -> CacheResult:
        return self.get(f"{CACHE_PREFIX_IMAGE}{image_id}")

    def cache_image_analysis(self, image_id: str, analysis) -> bool:
        return self.set(f"{CACHE_PREFIX_IMAGE}{image_id}", analysis)

    # ========================================================================
    # Usage Counters
    # ========================================================================

    def increment_pattern_usage(self, pattern_id) -> int:
        """Best-effort counter; 0 when the backend is unavailable."""
        try:
            return self._call("incr", f"{CACHE_PREFIX_USAGE}{pattern_id}")
        except CacheUnavailable:
            return 0

    def get_pattern_usage_count(self, pattern_id) -> int:
        result = self.get(f"{CACHE_PREFIX_USAGE}{pattern_id}")
        try:
            return int(result.value) if result.is_hit else 0
        except (TypeError, ValueError):
            return 0
