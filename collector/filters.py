"""Optional read-side filters shared by every aggregate query."""
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel

# Latest report per installation, the canonical "current state" row.
LATEST_INSTALLATIONS = (
    "SELECT installation_id, MAX(id) AS max_id FROM installations "
    "WHERE installation_id IS NOT NULL AND installation_id != '' "
    "GROUP BY installation_id"
)

_VERSION_VIA_LATEST = (
    "{column} IN (SELECT li.installation_id FROM installations li "
    "INNER JOIN (" + LATEST_INSTALLATIONS + ") lm ON li.id = lm.max_id "
    "WHERE li.plugin_version = :f_version)"
)

PERIODS: Dict[str, int] = {
    "24h": 24 * 3600,
    "7d": 7 * 24 * 3600,
    "30d": 30 * 24 * 3600,
}


class StatsFilters(BaseModel):
    """Exact-match refinements for dashboard queries; blank values are ignored."""

    ip: Optional[str] = None
    installation_id: Optional[str] = None
    version: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.ip or self.installation_id or self.version)

    def clause(self, prefix: str = "", version_column: Optional[str] = None) -> Tuple[str, Dict[str, Any]]:
        """Render the filters as ``" AND ..."`` plus bound parameters.

        ``version_column`` names a local plugin-version column. Without one,
        the version filter matches installations whose latest report carries
        that version.
        """

        p = f"{prefix}." if prefix else ""
        conditions = []
        params: Dict[str, Any] = {}
        if self.ip:
            conditions.append(f"{p}ip_address = :f_ip")
            params["f_ip"] = self.ip
        if self.installation_id:
            conditions.append(f"{p}installation_id = :f_installation_id")
            params["f_installation_id"] = self.installation_id
        if self.version:
            if version_column:
                conditions.append(f"{p}{version_column} = :f_version")
            else:
                conditions.append(_VERSION_VIA_LATEST.format(column=f"{p}installation_id"))
            params["f_version"] = self.version
        if not conditions:
            return "", params
        return " AND " + " AND ".join(conditions), params


NO_FILTERS = StatsFilters()

__all__ = ["LATEST_INSTALLATIONS", "NO_FILTERS", "PERIODS", "StatsFilters"]
