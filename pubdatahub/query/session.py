"""Query sessions: history, saved queries and interactive dot-commands."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, TextIO

from .types import (
    CommandInfo,
    Completion,
    QueryError,
    QueryHistory,
    QueryResult,
    SessionSettings,
    default_session_settings,
)

log = logging.getLogger(__name__)


class ExitRequested(Exception):
    """Raised by the exit command to leave interactive mode."""


class TUIQuerySession:
    """A query session bound to one data source, keeping a bounded history."""

    def __init__(
        self,
        session_id: str,
        data_source: str,
        engine: Any,
        settings: SessionSettings | None = None,
    ) -> None:
        self.id = session_id
        self.data_source = data_source
        self.engine = engine
        self.settings = settings if settings is not None else default_session_settings()
        self.start_time = datetime.now()
        self._lock = threading.RLock()
        self._history: list[QueryHistory] = []
        self._saved_queries: dict[str, str] = {}
        self._active = True

    @property
    def is_active(self) -> bool:
        return self._active

    def execute(self, query: str) -> QueryResult:
        """Run ``query`` through the engine and record it in the history."""
        with self._lock:
            if not self._active:
                raise QueryError("session is not active", query=query, data_source=self.data_source)
            try:
                result = self.engine.execute_concurrent(self.data_source, query)
            except Exception as exc:
                self._record(query, QueryResult(), exc)
                raise
            self._record(query, result, None)
            return result

    def get_history(self) -> list[QueryHistory]:
        """Return a copy of the query history, oldest first."""
        with self._lock:
            return list(self._history)

    def add_to_history(self, query: str, result: QueryResult) -> None:
        """Record a successful query in the history."""
        with self._lock:
            self._record(query, result, None)

    def save_query(self, name: str, query: str) -> None:
        """Store ``query`` under ``name``."""
        with self._lock:
            self._saved_queries[name] = query
        log.info("Saved query '%s' in session %s", name, self.id)

    def load_query(self, name: str) -> str:
        """Return the query saved under ``name``."""
        with self._lock:
            try:
                return self._saved_queries[name]
            except KeyError:
                raise LookupError(f"query '{name}' not found") from None

    def get_saved_queries(self) -> dict[str, str]:
        """Return a copy of all saved queries."""
        with self._lock:
            return dict(self._saved_queries)

    def close(self) -> None:
        """Deactivate the session."""
        with self._lock:
            self._active = False
        log.info(
            "Closed query session %s (duration: %s)", self.id, datetime.now() - self.start_time
        )

    def _record(self, query: str, result: QueryResult, error: Exception | None) -> None:
        self._history.append(
            QueryHistory(
                query=query,
                timestamp=datetime.now(),
                duration=result.duration,
                row_count=result.count,
                success=error is None,
                error_msg=str(error) if error is not None else "",
            )
        )
        limit = self.settings.history_limit
        if len(self._history) > limit:
            del self._history[: len(self._history) - limit]


class InteractiveCommand(ABC):
    """A dot-command available in an interactive session."""

    description: str = ""
    usage: str = ""
    category: str = ""

    @abstractmethod
    def execute(self, session: "TUIInteractiveSession", args: list[str]) -> None:
        """Run the command."""


class TUIInteractiveSession:
    """A query session with completions, multi-line mode and dot-commands."""

    def __init__(self, base_session: TUIQuerySession) -> None:
        self.base = base_session
        self.multi_line_mode = False
        self.output: TextIO | None = None
        self.commands: dict[str, InteractiveCommand] = {
            "help": HelpCommand(),
            "tables": TablesCommand(),
            "schema": SchemaCommand(),
            "history": HistoryCommand(),
            "save": SaveQueryCommand(),
            "load": LoadQueryCommand(),
            "exit": ExitCommand(),
            "settings": SettingsCommand(),
        }

    @property
    def id(self) -> str:
        return self.base.id

    @property
    def data_source(self) -> str:
        return self.base.data_source

    @property
    def engine(self) -> Any:
        return self.base.engine

    @property
    def start_time(self) -> datetime:
        return self.base.start_time

    @property
    def settings(self) -> SessionSettings:
        return self.base.settings

    @settings.setter
    def settings(self, value: SessionSettings) -> None:
        self.base.settings = value

    def execute(self, query: str) -> QueryResult:
        return self.base.execute(query)

    def get_history(self) -> list[QueryHistory]:
        return self.base.get_history()

    def add_to_history(self, query: str, result: QueryResult) -> None:
        self.base.add_to_history(query, result)

    def save_query(self, name: str, query: str) -> None:
        self.base.save_query(name, query)

    def load_query(self, name: str) -> str:
        return self.base.load_query(name)

    def get_saved_queries(self) -> dict[str, str]:
        return self.base.get_saved_queries()

    def close(self) -> None:
        self.base.close()

    def _tables(self) -> list[Any]:
        source = self.engine.data_sources.get(self.data_source)
        if source is None:
            return []
        return list(source.get_schema().tables)

    def get_completions(self, partial: str) -> list[Completion]:
        """Return keyword, table and (for a leading '.') command completions."""
        completions = [
            Completion(text=text, type="keyword")
            for text in self.engine.get_completions(self.data_source, partial)
        ]
        if partial.startswith("."):
            wanted = partial[1:]
            completions.extend(
                Completion(
                    text=f".{name}",
                    display_text=f".{name}",
                    type="command",
                    description=command.description,
                )
                for name, command in self.commands.items()
                if name.startswith(wanted)
            )
        return completions

    def get_schema_completions(self) -> list[Completion]:
        """Return one completion per table of the session's data source."""
        return [
            Completion(
                text=table.name,
                display_text=table.name,
                type="table",
                description=f"Table with {len(table.columns)} columns",
            )
            for table in self._tables()
        ]

    def get_table_completions(self) -> list[Completion]:
        return self.get_schema_completions()

    def get_column_completions(self, table: str) -> list[Completion]:
        """Return the columns of ``table``, or nothing if it is unknown."""
        for candidate in self._tables():
            if candidate.name == table:
                return [
                    Completion(
                        text=column.name,
                        display_text=column.name,
                        type="column",
                        description=f"{column.type} column",
                    )
                    for column in candidate.columns
                ]
        return []

    def execute_command(self, command: str, args: list[str]) -> None:
        """Run the dot-command ``command`` with ``args``."""
        handler = self.commands.get(command)
        if handler is None:
            raise LookupError(f"unknown command: {command}")
        handler.execute(self, args)

    def get_available_commands(self) -> list[CommandInfo]:
        return [
            CommandInfo(
                name=name,
                description=command.description,
                usage=command.usage,
                category=command.category,
            )
            for name, command in self.commands.items()
        ]


def _flag(value: bool) -> str:
    return "true" if value else "false"


class HelpCommand(InteractiveCommand):
    description = "Show available commands"
    usage = ".help"
    category = "help"

    def execute(self, session: TUIInteractiveSession, args: list[str]) -> None:
        print("Available commands:", file=session.output)
        for info in session.get_available_commands():
            print(f"  .{info.name:<10} {info.description}", file=session.output)


class TablesCommand(InteractiveCommand):
    description = "List all tables"
    usage = ".tables"
    category = "schema"

    def execute(self, session: TUIInteractiveSession, args: list[str]) -> None:
        source = session.engine.data_sources.get(session.data_source)
        if source is None:
            return
        print("Available tables:", file=session.output)
        for table in source.get_schema().tables:
            print(f"  {table.name} ({len(table.columns)} columns)", file=session.output)


class SchemaCommand(InteractiveCommand):
    description = "Show table schema"
    usage = ".schema <table_name>"
    category = "schema"

    def execute(self, session: TUIInteractiveSession, args: list[str]) -> None:
        if not args:
            raise ValueError("schema command requires table name")
        table_name = args[0]
        source = session.engine.data_sources.get(session.data_source)
        if source is None:
            raise LookupError("data source not available")
        for table in source.get_schema().tables:
            if table.name == table_name:
                print(f"Schema for table '{table_name}':", file=session.output)
                for column in table.columns:
                    print(f"  {column.name:<20} {column.type}", file=session.output)
                return
        raise LookupError(f"table '{table_name}' not found")


class HistoryCommand(InteractiveCommand):
    description = "Show query history"
    usage = ".history"
    category = "session"

    def execute(self, session: TUIInteractiveSession, args: list[str]) -> None:
        history = session.get_history()
        if not history:
            print("No query history", file=session.output)
            return
        print("Query history:", file=session.output)
        for number, entry in enumerate(history, start=1):
            status = "✓" if entry.success else "✗"
            print(
                f"  {number}. {status} [{entry.timestamp:%H:%M:%S}] {entry.query} "
                f"({entry.duration.total_seconds():.2f}s)",
                file=session.output,
            )


class SaveQueryCommand(InteractiveCommand):
    description = "Save a named query"
    usage = ".save <name> <query>"
    category = "session"

    def execute(self, session: TUIInteractiveSession, args: list[str]) -> None:
        if len(args) < 2:
            raise ValueError("save command requires name and query")
        session.save_query(args[0], args[1])


class LoadQueryCommand(InteractiveCommand):
    description = "Load a saved query"
    usage = ".load <name>"
    category = "session"

    def execute(self, session: TUIInteractiveSession, args: list[str]) -> None:
        if not args:
            raise ValueError("load command requires query name")
        name = args[0]
        query = session.load_query(name)
        print(f"Loaded query '{name}': {query}", file=session.output)


class ExitCommand(InteractiveCommand):
    description = "Exit interactive mode"
    usage = ".exit"
    category = "session"

    def execute(self, session: TUIInteractiveSession, args: list[str]) -> None:
        raise ExitRequested("exit")


class SettingsCommand(InteractiveCommand):
    description = "Show current settings"
    usage = ".settings"
    category = "session"

    def execute(self, session: TUIInteractiveSession, args: list[str]) -> None:
        settings = session.settings
        out = session.output
        print("Current settings:", file=out)
        print(f"  Auto Complete: {_flag(settings.auto_complete)}", file=out)
        print(f"  Show Timing: {_flag(settings.show_timing)}", file=out)
        print(f"  Pagination Size: {settings.pagination_size}", file=out)
        print(f"  Output Format: {settings.output_format}", file=out)
        print(f"  History Limit: {settings.history_limit}", file=out)
        print(f"  Multi Line: {_flag(settings.multi_line)}", file=out)