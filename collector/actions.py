"""Named action events: validation, persistence and dashboard aggregates."""
from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable, List, Optional

from pydantic import BaseModel

from .errors import StoreError, ValidationError
from .filters import NO_FILTERS, PERIODS, StatsFilters
from .store import Store

logger = logging.getLogger(__name__)

DEFAULT_ACTION_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"
DEFAULT_MAX_ACTION_LENGTH = 64
LEGACY_INSTALLATION_ID = "0"


class ActionStats(BaseModel):
    total_actions: int = 0
    unique_action_types: int = 0
    unique_visitors: int = 0
    unique_visitors_24h: int = 0
    unique_visitors_7d: int = 0
    unique_visitors_30d: int = 0
    actions_24h: int = 0
    actions_7d: int = 0
    actions_30d: int = 0


class TopAction(BaseModel):
    action_name: str
    total_count: int
    unique_visitors: int


class VisitorSummary(BaseModel):
    ip_address: str
    actions_used: List[str]
    first_executed: int
    last_executed: int
    total_actions: int


class ActionRecorder:
    """Records one row per action invocation in the ``actions`` table."""

    def __init__(
        self,
        store: Store,
        pattern: str = DEFAULT_ACTION_PATTERN,
        max_length: int = DEFAULT_MAX_ACTION_LENGTH,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._pattern = re.compile(pattern)
        self._max_length = max_length
        self._clock = clock

    def validate(self, action_name: Any) -> str:
        if not isinstance(action_name, str) or not action_name:
            raise ValidationError("Action name is required")
        if len(action_name) > self._max_length:
            raise ValidationError(f"Action name longer than {self._max_length} characters")
        if self._pattern.fullmatch(action_name) is None:
            raise ValidationError("Action name has an invalid format")
        return action_name

    def persist(self, action_name: str, ip: Optional[str], installation_id: str = LEGACY_INSTALLATION_ID) -> None:
        try:
            self._store.execute_write(
                "INSERT INTO actions (action_name, timestamp, ip_address, installation_id) "
                "VALUES (:action_name, :timestamp, :ip, :installation_id)",
                {
                    "action_name": action_name,
                    "timestamp": int(self._clock()),
                    "ip": ip,
                    "installation_id": installation_id,
                },
            )
        except StoreError:
            logger.exception("Failed to record action %s", action_name)
            raise

    def track(self, action_name: Any, ip: Optional[str], installation_id: Optional[str] = None) -> int:
        """Validate and store an action, returning its running total."""

        name = self.validate(action_name)
        self.persist(name, ip, LEGACY_INSTALLATION_ID if installation_id is None else installation_id)
        return self.count(name)

    def count(self, action_name: str) -> int:
        try:
            return self._store.fetch_count(
                "SELECT COUNT(*) AS count FROM actions WHERE action_name = :name", {"name": action_name}
            )
        except StoreError:
            logger.warning("Action count query failed", exc_info=True)
            return 0

    def stats(self, filters: StatsFilters = NO_FILTERS) -> ActionStats:
        clause, params = filters.clause()
        now = int(self._clock())
        stats = ActionStats()
        try:
            stats.total_actions = self._store.fetch_count(
                "SELECT COUNT(*) AS count FROM actions WHERE 1=1" + clause, params
            )
            stats.unique_action_types = self._store.fetch_count(
                "SELECT COUNT(DISTINCT action_name) AS count FROM actions WHERE 1=1" + clause, params
            )
            stats.unique_visitors = self._store.fetch_count(
                "SELECT COUNT(DISTINCT ip_address) AS count FROM actions WHERE ip_address IS NOT NULL" + clause,
                params,
            )
            for period, seconds in PERIODS.items():
                windowed = {**params, "cutoff": now - seconds}
                setattr(
                    stats,
                    f"unique_visitors_{period}",
                    self._store.fetch_count(
                        "SELECT COUNT(DISTINCT ip_address) AS count FROM actions "
                        "WHERE ip_address IS NOT NULL AND timestamp >= :cutoff" + clause,
                        windowed,
                    ),
                )
                setattr(
                    stats,
                    f"actions_{period}",
                    self._store.fetch_count(
                        "SELECT COUNT(*) AS count FROM actions WHERE timestamp >= :cutoff" + clause, windowed
                    ),
                )
        except StoreError:
            logger.warning("Action stats query failed", exc_info=True)
            return ActionStats()
        return stats

    def top_actions(self, limit: int = 10, filters: StatsFilters = NO_FILTERS) -> List[TopAction]:
        clause, params = filters.clause()
        try:
            rows = self._store.fetch_all(
                "SELECT action_name, COUNT(*) AS total_count, COUNT(DISTINCT ip_address) AS unique_visitors "
                "FROM actions WHERE 1=1" + clause + " "
                "GROUP BY action_name ORDER BY total_count DESC, action_name LIMIT :limit",
                {**params, "limit": limit},
            )
        except StoreError:
            logger.warning("Top actions query failed", exc_info=True)
            return []
        return [TopAction(**row) for row in rows]

    def recent_actions(self, limit: int = 100) -> List[dict]:
        try:
            return self._store.fetch_all(
                "SELECT action_name, timestamp, ip_address, installation_id FROM actions "
                "ORDER BY id DESC LIMIT :limit",
                {"limit": limit},
            )
        except StoreError:
            logger.warning("Recent actions query failed", exc_info=True)
            return []

    def visitor_summary(self, filters: StatsFilters = NO_FILTERS) -> List[VisitorSummary]:
        """Per-IP usage: distinct actions, first and last use, total count."""

        clause, params = filters.clause()
        try:
            rows = self._store.fetch_all(
                "SELECT ip_address, action_name, COUNT(*) AS total, "
                "MIN(timestamp) AS first_seen, MAX(timestamp) AS last_seen "
                "FROM actions WHERE ip_address IS NOT NULL" + clause + " "
                "GROUP BY ip_address, action_name ORDER BY ip_address, action_name",
                params,
            )
        except StoreError:
            logger.warning("Visitor summary query failed", exc_info=True)
            return []

        visitors: List[VisitorSummary] = []
        for row in rows:
            if not visitors or visitors[-1].ip_address != row["ip_address"]:
                visitors.append(
                    VisitorSummary(
                        ip_address=row["ip_address"],
                        actions_used=[],
                        first_executed=row["first_seen"],
                        last_executed=row["last_seen"],
                        total_actions=0,
                    )
                )
            visitor = visitors[-1]
            visitor.actions_used.append(row["action_name"])
            visitor.first_executed = min(visitor.first_executed, int(row["first_seen"]))
            visitor.last_executed = max(visitor.last_executed, int(row["last_seen"]))
            visitor.total_actions += int(row["total"])
        return visitors


__all__ = ["ActionRecorder", "ActionStats", "TopAction", "VisitorSummary"]
