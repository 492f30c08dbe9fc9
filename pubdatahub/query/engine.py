"""Query engine that runs queries against data sources with caching and metrics."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from .cache import InMemoryQueryCache
from .export_job import ExportJob
from .session import TUIQuerySession
from .types import (
    OutputFormat,
    QueryHistory,
    QueryMetrics,
    QueryProgressInfo,
    QueryResult,
    default_session_settings,
)

log = logging.getLogger(__name__)

_DEFAULT_CACHE_SIZE = 1000
_DEFAULT_MAX_CONCURRENT = 10
_DEFAULT_QUERY_TIMEOUT = 5 * 60.0
_CACHE_TTL = timedelta(minutes=10)
_METRICS_INTERVAL = 30.0

_KEYWORDS = (
    "SELECT",
    "FROM",
    "WHERE",
    "ORDER BY",
    "GROUP BY",
    "HAVING",
    "LIMIT",
    "INSERT",
    "UPDATE",
    "DELETE",
)

QueryProgressCallback = Callable[[QueryProgressInfo], Any]


class QueryEngineError(Exception):
    """Raised when the query engine cannot accept or run a request."""


class TUIQueryEngine:
    """Runs queries against named data sources, caching results and tracking metrics."""

    def __init__(
        self,
        data_sources: Mapping[str, Any] | None,
        storage: Any = None,
        job_manager: Any = None,
    ) -> None:
        self.data_sources = data_sources if data_sources is not None else {}
        self.storage = storage
        self.job_manager = job_manager
        self.cache = InMemoryQueryCache(_DEFAULT_CACHE_SIZE)
        self.max_concurrent_queries = _DEFAULT_MAX_CONCURRENT
        self.query_timeout = _DEFAULT_QUERY_TIMEOUT
        self.enable_cache = True
        self._lock = threading.RLock()
        self._metrics = QueryMetrics()
        self._progress_callbacks: list[QueryProgressCallback] = []
        self._active_session: TUIQuerySession | None = None
        self._running = False
        self._stop_event = threading.Event()
        self._query_counter = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the engine and its background metrics collector."""
        with self._lock:
            if self._running:
                raise QueryEngineError("query engine is already running")
            log.info("Starting query engine")
            self._running = True
            self._stop_event = threading.Event()
            collector = threading.Thread(
                target=self._metrics_loop,
                args=(self._stop_event,),
                name="query-metrics",
                daemon=True,
            )
        collector.start()

    def stop(self) -> None:
        """Stop the engine, close the active session and clear the cache."""
        with self._lock:
            if not self._running:
                return
            log.info("Stopping query engine")
            self._stop_event.set()
            session = self._active_session
            self._active_session = None
            self._running = False
        if session is not None:
            session.close()
        self.cache.clear()

    def execute_concurrent(self, data_source: str, query: str) -> QueryResult:
        """Run ``query`` on ``data_source``, using the cache where possible."""
        if not self._running:
            raise QueryEngineError("query engine not running")
        source = self.data_sources.get(data_source)
        if source is None:
            raise QueryEngineError(f"unknown data source: {data_source}")

        with self._lock:
            if self._metrics.concurrent_queries >= self.max_concurrent_queries:
                raise QueryEngineError(
                    f"too many concurrent queries (max: {self.max_concurrent_queries})"
                )

        cache_key = f"{data_source}:{query}"
        if self.enable_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                elapsed = (
                    datetime.now() - cached.timestamp
                    if cached.timestamp is not None
                    else timedelta(0)
                )
                self._update_metrics(True, elapsed)
                return cached

        started_at = datetime.now()
        start = time.monotonic()
        query_number = self._begin_query()
        try:
            try:
                raw = source.query(query)
            except Exception:
                self._update_metrics(False, _since(start))
                raise
            duration = _since(start)
            result = QueryResult(
                columns=list(raw.columns),
                rows=list(raw.rows),
                count=raw.count,
                duration=duration,
                query=query,
                timestamp=started_at,
                data_source=data_source,
                is_realtime=self._is_data_source_active(data_source),
            )
            if self.enable_cache:
                self.cache.set(cache_key, result, _CACHE_TTL)
            self._update_metrics(False, duration)
            self._report_progress(
                QueryProgressInfo(
                    query_id=f"query_{query_number}",
                    data_source=data_source,
                    query=query,
                    progress=1.0,
                    rows_processed=raw.count,
                    duration=duration,
                    message="Query completed",
                )
            )
            return result
        finally:
            self._end_query()

    def start_export_job(
        self, data_source: str, query: str, format: OutputFormat | str, file: str
    ) -> str:
        """Submit a background job exporting the query's result to ``file``."""
        if not self._running:
            raise QueryEngineError("query engine not running")
        if self.job_manager is None:
            raise QueryEngineError("job manager not available")
        job = ExportJob(
            job_id=f"export_{time.time_ns()}",
            data_source=data_source,
            query=query,
            format=format,
            output_file=file,
            engine=self,
        )
        try:
            return self.job_manager.submit_job(job)
        except Exception as exc:
            raise QueryEngineError(f"failed to submit export job: {exc}") from exc

    def start_session(self, data_source: str) -> TUIQuerySession:
        """Open a new session, closing any session that was active."""
        with self._lock:
            previous = self._active_session
            session = TUIQuerySession(
                session_id=f"session_{time.time_ns()}",
                data_source=data_source,
                engine=self,
                settings=default_session_settings(),
            )
            self._active_session = session
        if previous is not None:
            previous.close()
        return session

    def get_active_session(self) -> TUIQuerySession | None:
        with self._lock:
            return self._active_session

    def close_session(self) -> None:
        """Close the active session, if any."""
        with self._lock:
            session = self._active_session
            self._active_session = None
        if session is not None:
            session.close()

    def get_query_metrics(self) -> QueryMetrics:
        """Return a copy of the current metrics."""
        with self._lock:
            return replace(self._metrics)

    def register_progress_callback(self, callback: QueryProgressCallback) -> None:
        with self._lock:
            self._progress_callbacks.append(callback)

    def get_completions(self, data_source: str, partial: str) -> list[str]:
        """Return SQL keywords and table names starting with ``partial``."""
        completions = [keyword for keyword in _KEYWORDS if keyword.startswith(partial)]
        source = self.data_sources.get(data_source)
        if source is not None:
            completions.extend(
                table.name
                for table in source.get_schema().tables
                if table.name.startswith(partial)
            )
        return completions

    def get_query_history(self, data_source: str) -> list[QueryHistory]:
        """Return the active session's history if it belongs to ``data_source``."""
        session = self.get_active_session()
        if session is not None and session.data_source == data_source:
            return session.get_history()
        return []

    def collect_storage_metrics(self) -> None:
        """Refresh connection and queue figures from the storage backend."""
        if self.storage is None:
            return
        connections = self.storage.get_active_connections()
        queued = self.storage.get_query_metrics().active_queries
        with self._lock:
            self._metrics.active_connections = connections
            self._metrics.queued_queries = queued

    def _metrics_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(_METRICS_INTERVAL):
            try:
                self.collect_storage_metrics()
            except Exception as exc:
                log.warning("Failed to collect storage metrics: %s", exc)

    def _is_data_source_active(self, data_source: str) -> bool:
        source = self.data_sources.get(data_source)
        if source is None:
            return False
        return bool(source.get_download_status().is_active)

    def _begin_query(self) -> int:
        with self._lock:
            self._metrics.concurrent_queries += 1
            self._query_counter += 1
            return self._query_counter

    def _end_query(self) -> None:
        with self._lock:
            self._metrics.concurrent_queries -= 1

    def _update_metrics(self, cache_hit: bool, duration: timedelta) -> None:
        with self._lock:
            metrics = self._metrics
            metrics.total_queries += 1
            total = metrics.total_queries
            if total == 1:
                metrics.average_time = duration
            else:
                metrics.average_time = (metrics.average_time * total + duration) // (total + 1)
            hits = metrics.cache_hit_rate * (total - 1)
            if cache_hit:
                hits += 1.0
            metrics.cache_hit_rate = hits / total

    def _report_progress(self, info: QueryProgressInfo) -> None:
        with self._lock:
            callbacks = list(self._progress_callbacks)
        for callback in callbacks:
            threading.Thread(target=callback, args=(info,), daemon=True).start()


def _since(start: float) -> timedelta:
    return timedelta(seconds=time.monotonic() - start)