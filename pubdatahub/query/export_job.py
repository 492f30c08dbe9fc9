"""Background job that exports query results to CSV, TSV or JSON files."""

from __future__ import annotations

import csv
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, TextIO

from .types import OutputFormat, QueryResult

log = logging.getLogger(__name__)

JOB_TYPE_EXPORT = "export"
PRIORITY_NORMAL = "normal"

_PROGRESS_EVERY = 1000
_PAUSE_POLL = 0.1
_SUPPORTED_FORMATS = (OutputFormat.CSV, OutputFormat.JSON, OutputFormat.TSV)


@dataclass
class JobProgress:
    """Progress of a job."""

    current: int = 0
    total: int = 0
    message: str = ""


@dataclass
class BaseJob:
    """Fields common to every background job."""

    id: str
    type: str
    priority: str = PRIORITY_NORMAL
    description: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    progress: JobProgress = field(default_factory=JobProgress)


ProgressCallback = Callable[[JobProgress], Any]


def _trim_number(value: float) -> str:
    return f"{value:.6f}".rstrip("0").rstrip(".")


def _format_duration(value: timedelta) -> str:
    micros = (value.days * 86400 + value.seconds) * 1_000_000 + value.microseconds
    if micros == 0:
        return "0s"
    sign = "-" if micros < 0 else ""
    micros = abs(micros)
    if micros < 1000:
        return f"{sign}{micros}µs"
    if micros < 1_000_000:
        return f"{sign}{_trim_number(micros / 1000)}ms"
    hours, rest = divmod(micros, 3_600_000_000)
    minutes, rest = divmod(rest, 60_000_000)
    text = ""
    if hours:
        text += f"{hours}h"
    if hours or minutes:
        text += f"{minutes}m"
    return f"{sign}{text}{_trim_number(rest / 1_000_000)}s"


def _format_cell(cell: Any) -> str:
    if cell is None:
        return ""
    if isinstance(cell, bool):
        return "true" if cell else "false"
    if isinstance(cell, float) and cell.is_integer() and abs(cell) < 1e21:
        return str(int(cell))
    return str(cell)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return _format_duration(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class ExportJob(BaseJob):
    """Runs a query through an engine and writes its result to a file."""

    def __init__(
        self,
        job_id: str,
        data_source: str,
        query: str,
        format: OutputFormat | str,
        output_file: str,
        engine: Any,
    ) -> None:
        try:
            fmt: OutputFormat | str = OutputFormat(format)
        except ValueError:
            fmt = format
        fmt_text = fmt.value if isinstance(fmt, OutputFormat) else str(fmt)
        super().__init__(
            id=job_id,
            type=JOB_TYPE_EXPORT,
            priority=PRIORITY_NORMAL,
            description=f"Export query results from {data_source} to {output_file}",
            metadata={
                "data_source": data_source,
                "query": query,
                "output_file": output_file,
                "output_format": fmt_text,
            },
        )
        self.data_source = data_source
        self.query = query
        self.format = fmt
        self.output_file = output_file
        self.engine = engine
        self.rows_exported = 0
        self.total_rows = 0
        self.bytes_written = 0
        self.compression_ratio = 0.0
        self._running = threading.Event()
        self._running.set()

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    def execute(
        self,
        cancel_event: threading.Event | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> None:
        """Run the export; raises on validation, query or cancellation failure."""
        log.info("Starting export job: %s", self.id)
        try:
            self.validate()
        except ValueError as exc:
            raise ValueError(f"export job validation failed: {exc}") from exc

        self._ensure_output_directory()

        try:
            result = self.engine.execute_concurrent(self.data_source, self.query)
        except Exception as exc:
            raise RuntimeError(f"failed to execute query: {exc}") from exc

        self.total_rows = result.count
        self._update_progress(0, "Starting export", progress_callback)

        if self.format is OutputFormat.CSV:
            self._export_delimited(result, ",", cancel_event, progress_callback)
        elif self.format is OutputFormat.TSV:
            self._export_delimited(result, "\t", cancel_event, progress_callback)
        elif self.format is OutputFormat.JSON:
            self._export_json(result, cancel_event, progress_callback)
        else:
            raise ValueError(f"unsupported export format: {self.format}")

        self._update_progress(self.total_rows, "Export completed", progress_callback)
        log.info(
            "Export job completed: %s (%d rows, %.2f MB)",
            self.id,
            self.rows_exported,
            self.bytes_written / (1024 * 1024),
        )

    def can_pause(self) -> bool:
        return True

    def pause(self) -> None:
        """Hold the export before its next row."""
        self._running.clear()
        log.info("Export job paused: %s", self.id)

    def resume(self) -> None:
        """Let a paused export continue."""
        self._running.set()
        log.info("Export job resumed: %s", self.id)

    def validate(self) -> None:
        """Raise ValueError if the job's parameters are unusable."""
        if not self.data_source:
            raise ValueError("data source is required")
        if not self.query:
            raise ValueError("query is required")
        if not self.output_file:
            raise ValueError("output file is required")
        if self.format not in _SUPPORTED_FORMATS:
            raise ValueError(f"unsupported format: {self.format}")
        if self.data_source not in self.engine.data_sources:
            raise ValueError(f"unknown data source: {self.data_source}")

    def _ensure_output_directory(self) -> None:
        directory = os.path.dirname(self.output_file)
        if directory and directory != ".":
            os.makedirs(directory, mode=0o755, exist_ok=True)

    def _wait_if_paused(self, cancel_event: threading.Event | None) -> None:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise InterruptedError("export cancelled")
            if self._running.wait(_PAUSE_POLL):
                return

    def _export_rows(
        self,
        result: QueryResult,
        write_row: Callable[[list[Any]], None],
        verb: str,
        cancel_event: threading.Event | None,
        callback: ProgressCallback | None,
    ) -> None:
        for index, row in enumerate(result.rows):
            self._wait_if_paused(cancel_event)
            write_row(row)
            self.rows_exported += 1
            if index % _PROGRESS_EVERY == 0:
                self._update_progress(index, f"{verb} {index} rows", callback)

    def _export_delimited(
        self,
        result: QueryResult,
        delimiter: str,
        cancel_event: threading.Event | None,
        callback: ProgressCallback | None,
    ) -> None:
        with open(self.output_file, "w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle, delimiter=delimiter, lineterminator="\n")
            writer.writerow(result.columns)
            self._export_rows(
                result,
                lambda row: writer.writerow([_format_cell(cell) for cell in row]),
                "Exported",
                cancel_event,
                callback,
            )
        self.bytes_written = os.path.getsize(self.output_file)

    def _export_json(
        self,
        result: QueryResult,
        cancel_event: threading.Event | None,
        callback: ProgressCallback | None,
    ) -> None:
        data: list[dict[str, Any]] = []
        self._export_rows(
            result,
            lambda row: data.append(dict(zip(result.columns, row))),
            "Processed",
            cancel_event,
            callback,
        )
        output = {
            "metadata": {
                "query": result.query,
                "data_source": result.data_source,
                "timestamp": result.timestamp,
                "duration": _format_duration(result.duration),
                "row_count": result.count,
            },
            "columns": result.columns,
            "data": data,
        }
        with open(self.output_file, "w", encoding="utf-8") as handle:
            self._dump_json(output, handle)
        self.bytes_written = os.path.getsize(self.output_file)

    @staticmethod
    def _dump_json(output: dict[str, Any], handle: TextIO) -> None:
        json.dump(
            output,
            handle,
            indent=2,
            sort_keys=True,
            ensure_ascii=False,
            default=_json_default,
        )
        handle.write("\n")

    def _update_progress(
        self, current: int, message: str, callback: ProgressCallback | None
    ) -> None:
        self.progress = JobProgress(current=current, total=self.total_rows, message=message)
        if callback is not None:
            callback(self.progress)