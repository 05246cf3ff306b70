"""Installation reports: strict validation, append-only storage, latest-state aggregates.

Every report is a new row. The current state of an installation is its row
with the highest id, so breakdowns and rates are computed over those rows only
and plugin restarts are not counted twice.
"""
from __future__ import annotations

import json
import logging
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from .errors import StoreError, ValidationError
from .filters import LATEST_INSTALLATIONS, NO_FILTERS, PERIODS, StatsFilters
from .store import Store

logger = logging.getLogger(__name__)

_LATEST_ROWS = "FROM installations i1 INNER JOIN (" + LATEST_INSTALLATIONS + ") i2 ON i1.id = i2.max_id WHERE 1=1"
_HAS_INSTALLATION_ID = "installation_id IS NOT NULL AND installation_id != ''"


def _truncate(value: Optional[str], length: int) -> Optional[str]:
    return value[:length] if value is not None else None


def encode_extra_data(extra: Optional[Dict[str, Any]]) -> Optional[str]:
    """Canonical JSON for unrecognized report fields; ``None`` when there are none.

    Raises ``ValueError`` for NaN or infinite numbers, which are not JSON.
    """

    if not extra:
        return None
    return json.dumps(extra, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-JSON constant {name}")


def decode_extra_data(raw: Optional[str]) -> Dict[str, Any]:
    """Inverse of :func:`encode_extra_data`; unreadable blobs decode to ``{}``."""

    if not raw:
        return {}
    try:
        value = json.loads(raw, parse_constant=_reject_constant)
    except ValueError:
        logger.warning("Discarding unreadable extra_data")
        return {}
    return value if isinstance(value, dict) else {}


class InstallationReport(BaseModel):
    """Schema of an installation report as sent by the plugin.

    Keys outside the declared aliases are kept in ``model_extra`` and stored as
    ``extra_data``.
    """

    model_config = ConfigDict(extra="allow", strict=True)

    platform: str = Field(..., min_length=1)
    os_version: str = Field(..., alias="osVersion")
    os_release: str = Field(..., alias="osRelease")
    plugin_version: str = Field(..., alias="pluginVersion")
    node_version: str = Field(..., alias="nodeVersion")
    yandex_music_connected: bool = Field(..., alias="yandexMusicConnected")
    yandex_music_path: Optional[str] = Field(None, alias="yandexMusicPath")
    stream_deck_version: Optional[str] = Field(None, alias="streamDeckVersion")
    stream_deck_language: Optional[str] = Field(None, alias="streamDeckLanguage")
    installation_id: str = Field(..., min_length=1)

    @property
    def extra_data(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})

    def to_row(self) -> Dict[str, Any]:
        return {
            "platform": self.platform[:50],
            "os_version": self.os_version[:100],
            "os_release": self.os_release[:100],
            "plugin_version": self.plugin_version[:50],
            "node_version": self.node_version[:50],
            "yandex_music_connected": 1 if self.yandex_music_connected else 0,
            "yandex_music_path": _truncate(self.yandex_music_path, 500),
            "stream_deck_version": _truncate(self.stream_deck_version, 50),
            "stream_deck_language": _truncate(self.stream_deck_language, 20),
            "installation_id": self.installation_id[:255],
            "extra_data": encode_extra_data(self.extra_data),
        }


class PlatformCount(BaseModel):
    platform: str
    count: int


class VersionCount(BaseModel):
    version: str
    count: int


class OsCount(BaseModel):
    os: str
    count: int


class IpInstallations(BaseModel):
    ip_address: str
    installation_count: int
    versions: List[str]
    first_reported: int
    last_reported: int


class InstallationStats(BaseModel):
    total_installations: int = 0
    unique_installations: int = 0
    installations_24h: int = 0
    installations_7d: int = 0
    installations_30d: int = 0
    new_installations_24h: int = 0
    new_installations_7d: int = 0
    new_installations_30d: int = 0
    platform_breakdown: List[PlatformCount] = Field(default_factory=list)
    yandex_music_detection_rate: float = 0.0
    yandex_music_connection_rate: float = 0.0


def percentage(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    # half-up, not Python's half-to-even
    ratio = Decimal(100 * part) / Decimal(whole)
    return float(ratio.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


class InstallationRecorder:
    """Append-only recorder for the ``installations`` table."""

    def __init__(self, store: Store, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    def validate(self, payload: Any) -> InstallationReport:
        if not isinstance(payload, dict):
            raise ValidationError("Installation report must be a JSON object")
        try:
            report = InstallationReport.model_validate(payload)
        except SchemaError as exc:
            raise ValidationError(f"Invalid installation report: {exc.error_count()} error(s)") from exc
        try:
            encode_extra_data(report.extra_data)
        except ValueError as exc:
            raise ValidationError("Installation report carries non-JSON extra data") from exc
        return report

    def persist(self, report: InstallationReport, ip: Optional[str], user_agent: Optional[str]) -> None:
        row = report.to_row()
        row.update(timestamp=int(self._clock()), ip_address=ip, user_agent=user_agent)
        try:
            self._store.execute_write(
                "INSERT INTO installations ("
                "timestamp, ip_address, user_agent, "
                "platform, os_version, os_release, plugin_version, node_version, "
                "yandex_music_connected, yandex_music_path, "
                "stream_deck_version, stream_deck_language, "
                "installation_id, extra_data"
                ") VALUES ("
                ":timestamp, :ip_address, :user_agent, "
                ":platform, :os_version, :os_release, :plugin_version, :node_version, "
                ":yandex_music_connected, :yandex_music_path, "
                ":stream_deck_version, :stream_deck_language, "
                ":installation_id, :extra_data)",
                row,
            )
        except StoreError:
            logger.exception("Failed to record installation %s", report.installation_id)
            raise

    def track(self, payload: Any, ip: Optional[str], user_agent: Optional[str] = None) -> InstallationReport:
        report = self.validate(payload)
        self.persist(report, ip, user_agent)
        return report

    def unique_installation_count(self, filters: StatsFilters = NO_FILTERS) -> int:
        clause, params = filters.clause(version_column="plugin_version")
        try:
            return self._store.fetch_count(
                "SELECT COUNT(DISTINCT installation_id) AS count FROM installations WHERE "
                + _HAS_INSTALLATION_ID
                + clause,
                params,
            )
        except StoreError:
            logger.warning("Unique installation query failed", exc_info=True)
            return 0

    def stats(self, filters: StatsFilters = NO_FILTERS) -> InstallationStats:
        clause, params = filters.clause(version_column="plugin_version")
        latest_clause, latest_params = filters.clause("i1", version_column="plugin_version")
        now = int(self._clock())
        stats = InstallationStats()
        try:
            stats.total_installations = self._store.fetch_count(
                "SELECT COUNT(*) AS count FROM installations WHERE 1=1" + clause, params
            )
            stats.unique_installations = self._store.fetch_count(
                "SELECT COUNT(DISTINCT installation_id) AS count FROM installations WHERE "
                + _HAS_INSTALLATION_ID
                + clause,
                params,
            )
            for period, seconds in PERIODS.items():
                windowed = {**params, "cutoff": now - seconds}
                setattr(
                    stats,
                    f"installations_{period}",
                    self._store.fetch_count(
                        "SELECT COUNT(DISTINCT installation_id) AS count FROM installations "
                        "WHERE timestamp >= :cutoff AND " + _HAS_INSTALLATION_ID + clause,
                        windowed,
                    ),
                )
                setattr(
                    stats,
                    f"new_installations_{period}",
                    self._store.fetch_count(
                        "SELECT COUNT(*) AS count FROM ("
                        "SELECT installation_id, MIN(timestamp) AS first_seen FROM installations "
                        "WHERE " + _HAS_INSTALLATION_ID + clause + " GROUP BY installation_id"
                        ") first_reports WHERE first_seen >= :cutoff",
                        windowed,
                    ),
                )

            rows = self._store.fetch_all(
                "SELECT platform, COUNT(*) AS count FROM installations WHERE 1=1"
                + clause
                + " GROUP BY platform ORDER BY count DESC, platform",
                params,
            )
            stats.platform_breakdown = [PlatformCount(**row) for row in rows]

            if stats.unique_installations > 0:
                detected = self._store.fetch_count(
                    "SELECT COUNT(*) AS count " + _LATEST_ROWS + latest_clause + " AND ("
                    "i1.yandex_music_connected = 1 OR "
                    "(i1.yandex_music_path IS NOT NULL AND i1.yandex_music_path != ''))",
                    latest_params,
                )
                connected = self._store.fetch_count(
                    "SELECT COUNT(*) AS count " + _LATEST_ROWS + latest_clause + " AND i1.yandex_music_connected = 1",
                    latest_params,
                )
                stats.yandex_music_detection_rate = percentage(detected, stats.unique_installations)
                stats.yandex_music_connection_rate = percentage(connected, stats.unique_installations)
        except StoreError:
            logger.warning("Installation stats query failed", exc_info=True)
            return InstallationStats()
        return stats

    def recent_installations(self, limit: int = 50, filters: StatsFilters = NO_FILTERS) -> List[Dict[str, Any]]:
        """Latest report of each installation, newest first."""

        clause, params = filters.clause("i1", version_column="plugin_version")
        try:
            rows = self._store.fetch_all(
                "SELECT i1.* " + _LATEST_ROWS + clause + " ORDER BY i1.id DESC LIMIT :limit",
                {**params, "limit": limit},
            )
        except StoreError:
            logger.warning("Recent installations query failed", exc_info=True)
            return []
        for row in rows:
            row["yandex_music_connected"] = bool(row.get("yandex_music_connected"))
            row["extra_data"] = decode_extra_data(row.get("extra_data"))
        return rows

    def version_breakdown(self, filters: StatsFilters = NO_FILTERS) -> List[VersionCount]:
        clause, params = filters.clause("i1", version_column="plugin_version")
        try:
            rows = self._store.fetch_all(
                "SELECT i1.plugin_version AS version, COUNT(*) AS count "
                + _LATEST_ROWS
                + clause
                + " GROUP BY i1.plugin_version ORDER BY count DESC, version",
                params,
            )
        except StoreError:
            logger.warning("Version breakdown query failed", exc_info=True)
            return []
        return [VersionCount(**row) for row in rows]

    def os_breakdown(self, filters: StatsFilters = NO_FILTERS) -> List[OsCount]:
        """Counts of ``"<platform> <os_release>"`` over latest reports."""

        clause, params = filters.clause("i1", version_column="plugin_version")
        try:
            rows = self._store.fetch_all(
                "SELECT i1.platform AS platform, i1.os_release AS os_release, COUNT(*) AS count "
                + _LATEST_ROWS
                + clause
                + " GROUP BY i1.platform, i1.os_release",
                params,
            )
        except StoreError:
            logger.warning("OS breakdown query failed", exc_info=True)
            return []

        counts: Dict[str, int] = {}
        for row in rows:
            label = f"{row['platform']} {row['os_release'] or 'unknown'}"
            counts[label] = counts.get(label, 0) + int(row["count"])
        ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        return [OsCount(os=label, count=count) for label, count in ordered]

    def installations_by_ip(self) -> List[IpInstallations]:
        try:
            rows = self._store.fetch_all(
                "SELECT ip_address, plugin_version, COUNT(*) AS count, "
                "MIN(timestamp) AS first_seen, MAX(timestamp) AS last_seen "
                "FROM installations WHERE ip_address IS NOT NULL "
                "GROUP BY ip_address, plugin_version ORDER BY ip_address, plugin_version"
            )
        except StoreError:
            logger.warning("Installations-by-IP query failed", exc_info=True)
            return []

        by_ip: Dict[str, IpInstallations] = {}
        for row in rows:
            entry = by_ip.get(row["ip_address"])
            if entry is None:
                entry = by_ip[row["ip_address"]] = IpInstallations(
                    ip_address=row["ip_address"],
                    installation_count=0,
                    versions=[],
                    first_reported=row["first_seen"],
                    last_reported=row["last_seen"],
                )
            entry.installation_count += int(row["count"])
            entry.versions.append(row["plugin_version"])
            entry.first_reported = min(entry.first_reported, int(row["first_seen"]))
            entry.last_reported = max(entry.last_reported, int(row["last_seen"]))
        return sorted(by_ip.values(), key=lambda entry: -entry.installation_count)


__all__ = [
    "InstallationRecorder",
    "InstallationReport",
    "InstallationStats",
    "IpInstallations",
    "OsCount",
    "PlatformCount",
    "VersionCount",
    "decode_extra_data",
    "encode_extra_data",
    "percentage",
]
