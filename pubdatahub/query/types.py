"""Data types shared by the query engine, sessions, cache and export jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class OutputFormat(str, Enum):
    """Output formats for query results."""

    TABLE = "table"
    JSON = "json"
    CSV = "csv"
    TSV = "tsv"
    PARQUET = "parquet"

    def __str__(self) -> str:
        return self.value


@dataclass
class QueryResult:
    """Result of a query, with details about how and when it was run."""

    columns: list[str] = field(default_factory=list)
    rows: list[list[Any]] = field(default_factory=list)
    count: int = 0
    duration: timedelta = timedelta(0)
    query: str = ""
    timestamp: datetime | None = None
    data_source: str = ""
    is_realtime: bool = False
    job_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryHistory:
    """One query execution recorded in a session's history."""

    query: str
    timestamp: datetime
    duration: timedelta = timedelta(0)
    row_count: int = 0
    success: bool = True
    error_msg: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionSettings:
    """User preferences for a query session."""

    auto_complete: bool = True
    show_timing: bool = True
    pagination_size: int = 20
    output_format: OutputFormat = OutputFormat.TABLE
    history_limit: int = 1000
    multi_line: bool = False


def default_session_settings() -> SessionSettings:
    """Return the default session settings."""
    return SessionSettings()


@dataclass
class QueryMetrics:
    """Performance figures of the query engine."""

    total_queries: int = 0
    average_time: timedelta = timedelta(0)
    concurrent_queries: int = 0
    cache_hit_rate: float = 0.0
    active_connections: int = 0
    queued_queries: int = 0
    error_rate: float = 0.0
    last_error: str = ""
    last_error_time: datetime | None = None


@dataclass
class QueryProgressInfo:
    """Progress report for a long-running query."""

    query_id: str
    data_source: str
    query: str
    progress: float = 0.0
    rows_processed: int = 0
    estimated_total: int = 0
    duration: timedelta = timedelta(0)
    message: str = ""
    is_export: bool = False


@dataclass
class Completion:
    """An auto-completion suggestion."""

    text: str
    display_text: str = ""
    type: str = ""
    description: str = ""


@dataclass
class CommandInfo:
    """Description of an interactive command."""

    name: str
    description: str
    usage: str
    category: str


@dataclass
class ColumnInfo:
    """Detailed information about a column."""

    name: str
    type: str
    not_null: bool = False
    default_value: str = ""
    primary_key: bool = False
    unique_count: int = 0


@dataclass
class IndexInfo:
    """Information about a database index."""

    name: str
    columns: list[str] = field(default_factory=list)
    unique: bool = False
    hit_rate: float = 0.0
    size: int = 0
    last_used: datetime | None = None


@dataclass
class SchemaInfo:
    """Detailed schema information for one table."""

    table_name: str
    columns: list[ColumnInfo] = field(default_factory=list)
    indexes: list[IndexInfo] = field(default_factory=list)
    row_count: int = 0
    table_size: int = 0
    last_updated: datetime | None = None


@dataclass
class PlanStep:
    """One step of a query execution plan."""

    operation: str
    table: str = ""
    index: str = ""
    cost: float = 0.0
    rows: int = 0
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryPlan:
    """A query execution plan."""

    query: str
    plan: list[PlanStep] = field(default_factory=list)
    estimated_cost: float = 0.0
    estimated_rows: int = 0
    explanation: str = ""


@dataclass
class CacheStats:
    """Statistics about a query cache."""

    hit_count: int = 0
    miss_count: int = 0
    hit_rate: float = 0.0
    size: int = 0
    max_size: int = 0
    memory_usage: int = 0


class QueryError(Exception):
    """An error raised while executing a query."""

    def __init__(
        self,
        message: str,
        *,
        query: str = "",
        data_source: str = "",
        error_type: str = "",
        timestamp: datetime | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.query = query
        self.data_source = data_source
        self.error_type = error_type
        self.timestamp = timestamp if timestamp is not None else datetime.now()
        self.context = dict(context) if context else {}

    def __str__(self) -> str:
        return self.message