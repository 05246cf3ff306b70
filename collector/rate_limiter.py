"""Store-backed fixed-window rate limiting keyed by IP and endpoint type."""
from __future__ import annotations

import logging
import random
import time
from typing import Callable, Dict, Mapping

from .errors import StoreError
from .store import Store

logger = logging.getLogger(__name__)

CLEANUP_HORIZON_SECONDS = 24 * 3600

_SELECT_WINDOW = (
    "SELECT request_count, window_start FROM rate_limits "
    "WHERE ip_address = :ip AND endpoint_type = :endpoint"
)

_RESET_WINDOW = (
    "UPDATE rate_limits SET request_count = 0, window_start = :now "
    "WHERE ip_address = :ip AND endpoint_type = :endpoint AND window_start < :cutoff"
)

# Expired windows restart at 1 instead of accumulating onto the stale count.
_UPSERT_ON_CONFLICT = (
    "INSERT INTO rate_limits (ip_address, endpoint_type, request_count, window_start) "
    "VALUES (:ip, :endpoint, 1, :now) "
    "ON CONFLICT (ip_address, endpoint_type) DO UPDATE SET "
    "request_count = CASE WHEN rate_limits.window_start < :cutoff THEN 1 "
    "ELSE rate_limits.request_count + 1 END, "
    "window_start = CASE WHEN rate_limits.window_start < :cutoff THEN :now "
    "ELSE rate_limits.window_start END"
)

# MySQL evaluates assignments left to right; request_count must come first so
# the window_start comparison still sees the old value.
_UPSERT_ON_DUPLICATE_KEY = (
    "INSERT INTO rate_limits (ip_address, endpoint_type, request_count, window_start) "
    "VALUES (:ip, :endpoint, 1, :now) "
    "ON DUPLICATE KEY UPDATE "
    "request_count = IF(window_start < :cutoff, 1, request_count + 1), "
    "window_start = IF(window_start < :cutoff, :now, window_start)"
)

_INCREMENT_LIVE_WINDOW = (
    "UPDATE rate_limits SET "
    "request_count = CASE WHEN window_start < :cutoff THEN 1 ELSE request_count + 1 END, "
    "window_start = CASE WHEN window_start < :cutoff THEN :now ELSE window_start END "
    "WHERE ip_address = :ip AND endpoint_type = :endpoint"
)

_INSERT_WINDOW = (
    "INSERT INTO rate_limits (ip_address, endpoint_type, request_count, window_start) "
    "VALUES (:ip, :endpoint, 1, :now)"
)

_DELETE_STALE = "DELETE FROM rate_limits WHERE window_start < :cutoff"

_UPSERT_BY_DIALECT = {
    "sqlite": _UPSERT_ON_CONFLICT,
    "postgresql": _UPSERT_ON_CONFLICT,
    "mysql": _UPSERT_ON_DUPLICATE_KEY,
    "mariadb": _UPSERT_ON_DUPLICATE_KEY,
}


class RateLimiter:
    """Fixed-window request counter persisted in the ``rate_limits`` table.

    Each ``(ip, endpoint_type)`` pair owns one row holding the count for its
    current window. Windows expire lazily: an old row is only reset when the
    same pair is seen again, and stale rows are pruned by a cleanup that runs
    with ``cleanup_probability`` after each :meth:`record`.

    Store failures never block a request. :meth:`allow` answers ``True`` and
    :meth:`record` does nothing when the store is unavailable.
    """

    def __init__(
        self,
        store: Store,
        limits: Mapping[str, int],
        window_seconds: int = 3600,
        cleanup_probability: float = 0.01,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._store = store
        self._limits: Dict[str, int] = dict(limits)
        self._window_seconds = window_seconds
        self._cleanup_probability = cleanup_probability
        self._clock = clock
        self._rng = rng

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    def max_requests(self, endpoint_type: str) -> int:
        try:
            return self._limits[endpoint_type]
        except KeyError:
            raise ValueError(f"Unknown rate-limit endpoint type: {endpoint_type!r}") from None

    def allow(self, ip: str, endpoint_type: str) -> bool:
        """Return whether ``ip`` may issue another ``endpoint_type`` request."""

        max_requests = self.max_requests(endpoint_type)
        now = int(self._clock())
        cutoff = now - self._window_seconds
        params = {"ip": ip, "endpoint": endpoint_type}

        try:
            row = self._store.fetch_one(_SELECT_WINDOW, params)
            if row is None:
                return True

            if int(row["window_start"]) < cutoff:
                self._store.execute_write(_RESET_WINDOW, {**params, "now": now, "cutoff": cutoff})
                return True

            if int(row["request_count"]) < max_requests:
                return True
        except StoreError:
            logger.warning("Rate-limit check failed for %s/%s; allowing", ip, endpoint_type, exc_info=True)
            return True

        logger.info("Rate limit exceeded for %s on %s", ip, endpoint_type)
        return False

    def record(self, ip: str, endpoint_type: str) -> None:
        """Count one request for ``ip`` against its current window."""

        self.max_requests(endpoint_type)
        now = int(self._clock())
        params = {"ip": ip, "endpoint": endpoint_type, "now": now, "cutoff": now - self._window_seconds}

        try:
            upsert = _UPSERT_BY_DIALECT.get(self._store.dialect)
            if upsert is not None:
                self._store.execute_write(upsert, params)
            else:
                with self._store.transaction():
                    if self._store.execute_write(_INCREMENT_LIVE_WINDOW, params) == 0:
                        self._store.execute_write(_INSERT_WINDOW, params)
        except StoreError:
            logger.warning("Rate-limit record failed for %s/%s", ip, endpoint_type, exc_info=True)
            return

        if self._rng() < self._cleanup_probability:
            self.cleanup()

    def cleanup(self) -> None:
        """Drop rows whose window started more than a day ago."""

        cutoff = int(self._clock()) - CLEANUP_HORIZON_SECONDS
        try:
            removed = self._store.execute_write(_DELETE_STALE, {"cutoff": cutoff})
        except StoreError:
            logger.debug("Rate-limit cleanup failed", exc_info=True)
            return
        logger.debug("Rate-limit cleanup removed %s rows", removed)


__all__ = ["CLEANUP_HORIZON_SECONDS", "RateLimiter"]
