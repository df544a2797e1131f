import os
import json
import time
import logging
import tempfile
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

UNKNOWN = 'unknown'


@dataclass(frozen=True)
class CacheEntry:
    fetched_at: float
    value: Optional[str]


class ExternalDataCache:
    """Time-boxed cache for slow-moving third-party facts (latest release, network height).

    Entries live in a flat JSON file so they survive restarts. A value is fresh while
    ``now - fetched_at < ttl``; stale values keep being served when a refetch fails.
    """

    def __init__(self, path: Optional[str], ttl: float = 300, clock: Callable[[], float] = time.time):
        self.path = path
        self.ttl = ttl
        self.clock = clock
        self.entries: Dict[str, CacheEntry] = self._load()

    def _load(self) -> Dict[str, CacheEntry]:
        if not self.path or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r') as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable cache file {self.path}: {e}")
            return {}
        if not isinstance(raw, dict):
            logger.warning(f"Ignoring malformed cache file {self.path}")
            return {}

        entries = {}
        for key, record in raw.items():
            try:
                value = record.get('value')
                entries[key] = CacheEntry(
                    fetched_at=float(record['fetched_at']),
                    value=str(value) if value not in (None, '') else None,
                )
            except (AttributeError, KeyError, TypeError, ValueError):
                logger.warning(f"Dropping corrupt cache record {key!r}")
        logger.info(f"Loaded {len(entries)} cached external values from {self.path}")
        return entries

    def _save(self):
        if not self.path:
            return
        payload = {
            key: {'fetched_at': entry.fetched_at, 'value': entry.value}
            for key, entry in self.entries.items()
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            fd, tmp_path = tempfile.mkstemp(prefix='.cache-', dir=directory)
            with os.fdopen(fd, 'w') as f:
                json.dump(payload, f, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to write cache file {self.path}: {e}")

    def peek(self, key: str) -> Optional[CacheEntry]:
        return self.entries.get(key)

    def get(self, key: str, default: str = UNKNOWN) -> str:
        entry = self.entries.get(key)
        if entry is None or entry.value is None:
            return default
        return entry.value

    def is_fresh(self, key: str, ttl: Optional[float] = None) -> bool:
        entry = self.entries.get(key)
        if entry is None or entry.value is None:
            return False
        ttl = self.ttl if ttl is None else ttl
        return self.clock() - entry.fetched_at < ttl

    async def get_or_refresh(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Optional[str]]],
        ttl: Optional[float] = None,
        default: str = UNKNOWN,
    ) -> str:
        """Return the cached value for ``key``, refetching it once when stale.

        Never raises: on a failed or empty fetch the previous value is returned, or
        ``default`` if nothing was ever fetched.
        """
        if self.is_fresh(key, ttl):
            return self.entries[key].value

        previous = self.entries.get(key)
        now = self.clock()
        try:
            result = await fetch_fn()
        except Exception as e:
            logger.warning(f"Refresh of {key} failed: {type(e).__name__}: {e}")
            result = None

        if result is not None and str(result).strip():
            value = str(result).strip()
            self.entries[key] = CacheEntry(fetched_at=now, value=value)
            self._save()
            logger.info(f"Refreshed {key} = {value}")
            return value

        if previous is not None and previous.value is not None:
            # hold on to the stale value and wait a full ttl before asking again
            logger.warning(f"Serving stale {key} = {previous.value}")
            self.entries[key] = CacheEntry(fetched_at=now, value=previous.value)
            self._save()
            return previous.value

        return default

