"""Relational store adapter built on SQLAlchemy Core.

Every component receives a :class:`Store` at construction time instead of
reaching for a module-level connection. Statements are plain parameterized SQL
(``:name`` placeholders) executed through :func:`sqlalchemy.text`; rows come
back as ``dict`` objects keyed by column name.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from .errors import StoreError

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
Params = Optional[Mapping[str, Any]]

metadata = MetaData()

actions_table = Table(
    "actions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("action_name", String(255), nullable=False),
    Column("timestamp", Integer, nullable=False),
    Column("ip_address", String(45)),
    Column("installation_id", String(255), server_default="0"),
    Index("idx_actions_action_name", "action_name"),
    Index("idx_actions_timestamp", "timestamp"),
    Index("idx_actions_installation_id", "installation_id"),
)

rate_limits_table = Table(
    "rate_limits",
    metadata,
    Column("ip_address", String(45), primary_key=True),
    Column("endpoint_type", String(50), primary_key=True, server_default="action"),
    Column("request_count", Integer, nullable=False, server_default="1"),
    Column("window_start", Integer, nullable=False),
    Index("idx_rate_limits_window_start", "window_start"),
)

installations_table = Table(
    "installations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", Integer, nullable=False),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("platform", String(50), nullable=False),
    Column("os_version", String(100)),
    Column("os_release", String(100)),
    Column("plugin_version", String(50), nullable=False),
    Column("node_version", String(50)),
    Column("yandex_music_connected", Integer, nullable=False, server_default="0"),
    Column("yandex_music_path", String(500)),
    Column("stream_deck_version", String(50)),
    Column("stream_deck_language", String(20)),
    Column("installation_id", String(255), nullable=False),
    Column("extra_data", Text),
    Index("idx_installations_timestamp", "timestamp"),
    Index("idx_installations_ip_address", "ip_address"),
    Index("idx_installations_platform", "platform"),
    Index("idx_installations_plugin_version", "plugin_version"),
    Index("idx_installations_installation_id", "installation_id"),
)

errors_table = Table(
    "errors",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", Integer, nullable=False),
    Column("ip_address", String(45)),
    Column("installation_id", String(255), server_default=""),
    Column("platform", String(50)),
    Column("error_message", Text, nullable=False),
    Column("stack_trace", Text),
    Index("idx_errors_timestamp", "timestamp"),
    Index("idx_errors_installation_id", "installation_id"),
)


class Store:
    """Thin query/execute facade over a SQLAlchemy engine."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._local = threading.local()

    @classmethod
    def from_url(cls, url: str) -> "Store":
        kwargs: Dict[str, Any] = {"pool_pre_ping": True}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
        return cls(create_engine(url, **kwargs))

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    def create_schema(self) -> None:
        """Create the four collector tables if they are missing."""

        try:
            metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise StoreError("Failed to create schema") from exc
        logger.info("Collector schema ready (%s)", self.dialect)

    def dispose(self) -> None:
        self._engine.dispose()

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        active = getattr(self._local, "connection", None)
        if active is not None:
            yield active
            return
        with self._engine.begin() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator["Store"]:
        """Run the enclosed store calls on one connection, atomically.

        Commits on normal exit and rolls back when the block raises. Nested
        use joins the outer transaction.
        """

        if getattr(self._local, "connection", None) is not None:
            yield self
            return
        try:
            with self._engine.begin() as conn:
                self._local.connection = conn
                try:
                    yield self
                finally:
                    self._local.connection = None
        except SQLAlchemyError as exc:
            raise StoreError("Transaction failed") from exc

    def execute_write(self, sql: str, params: Params = None) -> int:
        """Execute a write statement and return the affected row count."""

        try:
            with self._connection() as conn:
                result = conn.execute(text(sql), dict(params or {}))
                return result.rowcount
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    def fetch_one(self, sql: str, params: Params = None) -> Optional[Row]:
        try:
            with self._connection() as conn:
                row = conn.execute(text(sql), dict(params or {})).mappings().first()
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc
        return dict(row) if row is not None else None

    def fetch_all(self, sql: str, params: Params = None) -> List[Row]:
        try:
            with self._connection() as conn:
                rows = conn.execute(text(sql), dict(params or {})).mappings().all()
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc
        return [dict(row) for row in rows]

    def fetch_count(self, sql: str, params: Params = None) -> int:
        """Return the ``count`` column of a single-row aggregate query, or 0."""

        row = self.fetch_one(sql, params)
        if row is None or row.get("count") is None:
            return 0
        return int(row["count"])


__all__ = [
    "Row",
    "Store",
    "actions_table",
    "errors_table",
    "installations_table",
    "metadata",
    "rate_limits_table",
]
