"""Collapse bursts of error reports into incident groups for display."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping

DEFAULT_TIME_WINDOW = 10
SIGNATURE_LENGTH = 50


def error_signature(message: Any) -> str:
    """Short prefix of an error message used to tell error kinds apart."""

    return str(message or "")[:SIGNATURE_LENGTH]


@dataclass
class ErrorGroup:
    """One incident: the row that opened it plus every row merged into it."""

    primary_error: Mapping[str, Any]
    installation_id: str
    count: int
    earliest_timestamp: int
    latest_timestamp: int
    error_types: List[str] = field(default_factory=list)
    errors: List[Mapping[str, Any]] = field(default_factory=list)

    @classmethod
    def open(cls, row: Mapping[str, Any]) -> "ErrorGroup":
        timestamp = int(row["timestamp"])
        return cls(
            primary_error=row,
            installation_id=row.get("installation_id") or "",
            count=1,
            earliest_timestamp=timestamp,
            latest_timestamp=timestamp,
            error_types=[error_signature(row.get("error_message"))],
            errors=[row],
        )

    @property
    def grouped_errors(self) -> List[Mapping[str, Any]]:
        """Members other than the primary error."""

        return self.errors[1:]

    @property
    def is_grouped(self) -> bool:
        return self.count > 1

    def accepts(self, installation_id: str, timestamp: int, time_window: int) -> bool:
        return self.installation_id == installation_id and abs(self.latest_timestamp - timestamp) <= time_window

    def add(self, row: Mapping[str, Any]) -> None:
        timestamp = int(row["timestamp"])
        self.errors.append(row)
        self.count += 1
        self.latest_timestamp = max(self.latest_timestamp, timestamp)
        self.earliest_timestamp = min(self.earliest_timestamp, timestamp)
        signature = error_signature(row.get("error_message"))
        if signature not in self.error_types:
            self.error_types.append(signature)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary_error": dict(self.primary_error),
            "installation_id": self.installation_id,
            "count": self.count,
            "earliest_timestamp": self.earliest_timestamp,
            "latest_timestamp": self.latest_timestamp,
            "error_types": list(self.error_types),
            "grouped_errors": [dict(row) for row in self.grouped_errors],
        }


def group_errors(errors: Iterable[Mapping[str, Any]], time_window: int = DEFAULT_TIME_WINDOW) -> List[ErrorGroup]:
    """Group newest-first error rows by installation and time proximity.

    A row joins the first earlier-created group with the same installation id
    whose latest timestamp is within ``time_window`` seconds of it; otherwise
    it opens a new group. Rows without an installation id are never merged.
    Groups are returned in creation order.
    """

    groups: List[ErrorGroup] = []

    for row in errors:
        installation_id = row.get("installation_id") or ""
        if not installation_id:
            groups.append(ErrorGroup.open(row))
            continue

        timestamp = int(row["timestamp"])
        for group in groups:
            if group.accepts(installation_id, timestamp, time_window):
                group.add(row)
                break
        else:
            groups.append(ErrorGroup.open(row))

    return groups


__all__ = ["DEFAULT_TIME_WINDOW", "ErrorGroup", "error_signature", "group_errors"]
