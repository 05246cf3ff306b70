"""Plugin error reports and the grouped recent-errors view."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as SchemaError

from .errors import StoreError, ValidationError
from .filters import NO_FILTERS, PERIODS, StatsFilters
from .grouping import DEFAULT_TIME_WINDOW, ErrorGroup, group_errors
from .store import Store

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000
MAX_STACK_TRACE_LENGTH = 10000
MAX_INSTALLATION_ID_LENGTH = 255
MAX_PLATFORM_LENGTH = 50

_HAS_INSTALLATION_ID = "installation_id IS NOT NULL AND installation_id != ''"

# Each error is enriched from the newest installation report of the same
# installation, restricted to the error's platform when it reported one.
_RECENT_ERRORS = (
    "SELECT e.id, e.timestamp, e.ip_address, e.installation_id, e.platform, "
    "e.error_message, e.stack_trace, i.plugin_version, i.os_release "
    "FROM errors e "
    "LEFT JOIN installations i ON e.installation_id != '' AND i.id = ("
    "SELECT MAX(li.id) FROM installations li "
    "WHERE li.installation_id = e.installation_id "
    "AND (e.platform IS NULL OR e.platform = '' OR li.platform = e.platform)"
    ") "
    "WHERE 1=1{clause} "
    "ORDER BY e.id DESC LIMIT :limit"
)


class ErrorReport(BaseModel):
    """Error payload sent by the plugin; unknown keys are ignored."""

    model_config = ConfigDict(strict=True, extra="ignore")

    error_message: str
    installation_id: Optional[str] = None
    platform: Optional[str] = None
    stack_trace: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "installation_id": (self.installation_id or "")[:MAX_INSTALLATION_ID_LENGTH],
            "platform": self.platform.strip()[:MAX_PLATFORM_LENGTH] if self.platform is not None else None,
            "error_message": self.error_message.strip()[:MAX_MESSAGE_LENGTH],
            "stack_trace": self.stack_trace[:MAX_STACK_TRACE_LENGTH] if self.stack_trace is not None else None,
        }


class ErrorStats(BaseModel):
    total_errors: int = 0
    errors_24h: int = 0
    unique_users_affected: int = 0
    users_affected_24h: int = 0
    users_affected_7d: int = 0
    users_affected_30d: int = 0


class ErrorPattern(BaseModel):
    error_pattern: str
    count: int
    unique_users: int


class ErrorRecorder:
    """Append-only recorder for the ``errors`` table.

    An empty ``installation_id`` is kept as-is: it marks a plugin that failed
    before it was initialized and is never folded into NULL.
    """

    def __init__(
        self,
        store: Store,
        clock: Callable[[], float] = time.time,
        group_window: int = DEFAULT_TIME_WINDOW,
        fetch_multiplier: int = 4,
    ) -> None:
        self._store = store
        self._clock = clock
        self._group_window = group_window
        self._fetch_multiplier = fetch_multiplier

    def validate(self, payload: Any) -> ErrorReport:
        if not isinstance(payload, dict):
            raise ValidationError("Error report must be a JSON object")
        try:
            report = ErrorReport.model_validate(payload)
        except SchemaError as exc:
            raise ValidationError(f"Invalid error report: {exc.error_count()} error(s)") from exc
        if not report.error_message.strip():
            raise ValidationError("error_message must not be blank")
        return report

    def persist(self, report: ErrorReport, ip: Optional[str]) -> None:
        row = report.to_row()
        row.update(timestamp=int(self._clock()), ip_address=ip)
        try:
            self._store.execute_write(
                "INSERT INTO errors (timestamp, ip_address, installation_id, platform, error_message, stack_trace) "
                "VALUES (:timestamp, :ip_address, :installation_id, :platform, :error_message, :stack_trace)",
                row,
            )
        except StoreError:
            logger.exception("Failed to record error report for installation %r", row["installation_id"])
            raise

    def track(self, payload: Any, ip: Optional[str]) -> ErrorReport:
        report = self.validate(payload)
        self.persist(report, ip)
        return report

    def unique_erroring_users(self, period: str = "all", filters: StatsFilters = NO_FILTERS) -> int:
        """Distinct installations that reported errors in ``period`` (24h, 7d, 30d or all)."""

        if period != "all" and period not in PERIODS:
            raise ValueError(f"Unknown period: {period!r}")
        clause, params = filters.clause()
        sql = "SELECT COUNT(DISTINCT installation_id) AS count FROM errors WHERE " + _HAS_INSTALLATION_ID
        if period != "all":
            sql += " AND timestamp >= :cutoff"
            params["cutoff"] = int(self._clock()) - PERIODS[period]
        try:
            return self._store.fetch_count(sql + clause, params)
        except StoreError:
            logger.warning("Erroring users query failed", exc_info=True)
            return 0

    def stats(self, filters: StatsFilters = NO_FILTERS) -> ErrorStats:
        clause, params = filters.clause()
        try:
            total = self._store.fetch_count("SELECT COUNT(*) AS count FROM errors WHERE 1=1" + clause, params)
            recent = self._store.fetch_count(
                "SELECT COUNT(*) AS count FROM errors WHERE timestamp >= :cutoff" + clause,
                {**params, "cutoff": int(self._clock()) - PERIODS["24h"]},
            )
        except StoreError:
            logger.warning("Error stats query failed", exc_info=True)
            return ErrorStats()
        return ErrorStats(
            total_errors=total,
            errors_24h=recent,
            unique_users_affected=self.unique_erroring_users("all", filters),
            users_affected_24h=self.unique_erroring_users("24h", filters),
            users_affected_7d=self.unique_erroring_users("7d", filters),
            users_affected_30d=self.unique_erroring_users("30d", filters),
        )

    def recent_errors(self, limit: int = 50, filters: StatsFilters = NO_FILTERS) -> List[ErrorGroup]:
        """Newest error groups, each row enriched with its installation's version and OS."""

        clause, params = filters.clause("e")
        try:
            rows = self._store.fetch_all(
                _RECENT_ERRORS.format(clause=clause),
                {**params, "limit": limit * self._fetch_multiplier},
            )
        except StoreError:
            logger.warning("Recent errors query failed", exc_info=True)
            return []
        return group_errors(rows, self._group_window)[:limit]

    def error_breakdown(self, limit: int = 10, filters: StatsFilters = NO_FILTERS) -> List[ErrorPattern]:
        """Most frequent error messages, compared on their first 100 characters."""

        clause, params = filters.clause()
        try:
            rows = self._store.fetch_all(
                "SELECT SUBSTR(error_message, 1, 100) AS error_pattern, COUNT(*) AS count, "
                "COUNT(DISTINCT installation_id) AS unique_users FROM errors WHERE 1=1"
                + clause
                + " GROUP BY SUBSTR(error_message, 1, 100) ORDER BY count DESC, error_pattern LIMIT :limit",
                {**params, "limit": limit},
            )
        except StoreError:
            logger.warning("Error breakdown query failed", exc_info=True)
            return []
        return [ErrorPattern(**row) for row in rows]


__all__ = ["ErrorPattern", "ErrorRecorder", "ErrorReport", "ErrorStats"]
