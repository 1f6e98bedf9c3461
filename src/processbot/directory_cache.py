"""Persisted GitHub login to Matrix id mapping, kept fresh from the employee directory.

The mapping lives in the shared store under `GITHUB_TO_MATRIX`. On a cold start (no entry
yet) the caller blocks on one directory fetch before the reconciliation loop starts; after
that a background task refreshes the entry on its own interval. A refresh replaces the
entry wholesale, so people removed from the directory disappear from the mapping.

The cache and the reconciliation loop never talk to each other directly: the loop reads
whatever the store holds at tick time.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections.abc import Awaitable, Callable

from .audit import AuditLogger, build_event, new_correlation_id
from .constants import GITHUB_TO_MATRIX_KEY
from .errors import BotError
from .store import LockedStore

logger = logging.getLogger(__name__)

FetchDirectory = Callable[[], Awaitable[dict[str, str]]]


class CacheState(enum.Enum):
    ABSENT = "absent"
    FRESH = "fresh"
    REFRESHING = "refreshing"


def encode_mapping(mapping: dict[str, str]) -> bytes:
    return json.dumps(mapping, sort_keys=True).encode("utf-8")


def decode_mapping(raw: bytes) -> dict[str, str] | None:
    """Decode a stored mapping; None if the bytes are not a JSON string-to-string object."""
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in data.items()):
        return None
    return data


class DirectoryCache:
    """Synchronizes the stored identity mapping with the employee directory."""

    def __init__(
        self,
        *,
        store: LockedStore,
        fetch_directory: FetchDirectory,
        audit: AuditLogger | None = None,
        key: str = GITHUB_TO_MATRIX_KEY,
    ) -> None:
        self._store = store
        self._fetch_directory = fetch_directory
        self._audit = audit
        self._key = key
        self._state = CacheState.ABSENT

    @property
    def state(self) -> CacheState:
        return self._state

    def _record(self, correlation_id: str, outcome: str, start: float, *, reason: str | None = None,
                count: int | None = None) -> None:
        if self._audit is None:
            return
        self._audit.write_event(
            build_event(
                correlation_id=correlation_id,
                operation="directory_refresh",
                target=self._key,
                outcome=outcome,
                reason=reason,
                duration_ms=self._audit.measure_duration_ms(start),
                count=count,
            )
        )

    async def warm_up(self) -> bool:
        """Block on one directory fetch if nothing is stored yet.

        Returns True when an entry is available afterwards. A failed fetch is logged and
        leaves the cache absent; store failures propagate.
        """
        existing = await asyncio.to_thread(self._store.read, self._key)
        if existing is not None:
            self._state = CacheState.FRESH
            return True

        try:
            mapping = await self._fetch_directory()
        except BotError as exc:
            logger.error("Error fetching employee data from directory: %s", exc)
            return False

        await asyncio.to_thread(self._store.replace, self._key, encode_mapping(mapping))
        self._state = CacheState.FRESH
        logger.info("Directory cache populated with %s entries", len(mapping))
        return True

    async def refresh_once(self) -> bool:
        """Fetch the directory and replace the stored entry.

        The fetch runs without holding the store lock; only the delete+put commit does.
        Fetch and store failures are logged and reported as False; a failed fetch leaves
        the stored entry untouched.
        """
        correlation_id = new_correlation_id()
        start = self._audit.measure_start() if self._audit is not None else 0.0
        previous = self._state
        self._state = CacheState.REFRESHING
        try:
            try:
                mapping = await self._fetch_directory()
            except BotError as exc:
                logger.error("Directory refresh failed: %s", exc)
                self._record(correlation_id, "error", start, reason=exc.code)
                return False

            try:
                await asyncio.to_thread(self._store.replace, self._key, encode_mapping(mapping))
            except BotError as exc:
                logger.error("Unable to store refreshed directory: %s", exc)
                self._record(correlation_id, "error", start, reason=exc.code)
                return False

            previous = CacheState.FRESH
        finally:
            self._state = previous

        logger.info("Directory cache refreshed with %s entries", len(mapping))
        self._record(correlation_id, "ok", start, count=len(mapping))
        return True

    async def run_forever(self, interval_s: float) -> None:
        """Refresh, then sleep `interval_s`, for the lifetime of the process."""
        while True:
            await self.refresh_once()
            await asyncio.sleep(interval_s)

    async def load(self) -> dict[str, str]:
        """Current mapping, or an empty one if nothing usable is stored.

        Raises:
            BotError: If the store itself cannot be read.
        """
        raw = await asyncio.to_thread(self._store.read, self._key)
        if raw is None:
            logger.error("Directory data not found in store")
            return {}
        mapping = decode_mapping(raw)
        if mapping is None:
            logger.error("Directory data in store is corrupt, ignoring it")
            return {}
        return mapping
