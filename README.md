# pubdatahub

This package provides building blocks for a data hub application. It has two
parts:

- a query engine that runs queries over named data sources, with caching,
  sessions and file exports;
- a shutdown and recovery system that saves application state on disk as JSON.

It uses only the standard library. Log output goes through `logging`.

## Installation

```
pip install .
```

## Query engine (`pubdatahub.query`)

- `engine.TUIQueryEngine(data_sources, storage, job_manager)`
  - `start()` and `stop()`. `stop()` closes the active session and clears the
    cache.
  - `execute_concurrent(data_source, query)` returns a `types.QueryResult`.
  - At most 10 queries run at once. When that limit is reached, the call raises
    `QueryEngineError`.
  - Results are cached for ten minutes in a `cache.InMemoryQueryCache`, keyed
    by `"<source>:<query>"`.
  - It updates `QueryMetrics` and passes a `QueryProgressInfo` to every
    callback registered with `register_progress_callback`.
  - `get_completions(data_source, partial)` returns the SQL keywords and table
    names that start with `partial`.
- `session.TUIQuerySession` is created through `engine.start_session(name)`.
  - It keeps the query history up to `SessionSettings.history_limit` entries
    (default 1000).
  - It stores saved queries by name.
- `session.TUIInteractiveSession(base_session)` wraps a session. It adds:
  - keyword, table, column and command completions;
  - the dot-commands `help`, `tables`, `schema`, `history`, `save`, `load`,
    `settings` and `exit`.

  Commands print to `session.output`, which is standard output by default.
  `exit` raises `ExitRequested`.
- `export_job.ExportJob` writes a query result to CSV, TSV or JSON, and can be
  paused, resumed and cancelled. `engine.start_export_job(source, query,
  format, file)` builds one and hands it to the job manager.

```python
from pubdatahub.query.engine import TUIQueryEngine

engine = TUIQueryEngine({"news": my_source}, None, my_job_manager)
engine.start()
result = engine.execute_concurrent("news", "SELECT * FROM items")
print(result.columns, result.count)
engine.stop()
```

The package includes no data sources, no storage backend and no job manager.
You supply them as plain objects:

- **Data source**
  - `query(text)` returns an object with `columns`, `rows` and `count`.
  - `get_schema()` returns an object whose `tables` each have a `name` and
    `columns`. Each column has a `name` and a `type`.
  - `get_download_status()` returns an object with `is_active`.
- **Job manager:** `submit_job(job)` returns the job id.
- **Storage** (optional):
  - `get_active_connections()`;
  - `get_query_metrics()`, which returns an object with `active_queries`.

  The engine reads these every 30 seconds, or whenever you call
  `collect_storage_metrics()`.

## Shutdown and recovery (`pubdatahub.shutdown`)

- `manager.ShutdownManager` runs the registered hooks in priority order,
  lowest number first.
  - Each hook gets its own timeout (default 10 s), and the whole run is limited
    to `graceful_timeout`.
  - Hook failures are recorded in `get_shutdown_status().errors`.
  - `start()` installs handlers for SIGINT and SIGTERM, and for SIGUSR1 where
    the platform has it. Call it from the main thread.
  - SIGUSR1 runs `save_checkpoint()`.
- `recovery.RecoveryManager` works out whether the last run ended cleanly,
  crashed, or left corrupted state (`RecoveryType`). It then runs the recovery
  handlers in priority order.
- `state.StateManager(storage_path, max_backups)` stores component state as
  JSON files in `<storage_path>/state`.
  - Each file is written atomically.
  - `backup_state()` creates timestamped backups in `state/backups` and keeps
    at most `max_backups` of them.
  - `ApplicationState` converts to and from a dict.
- `hooks` and `recovery_handlers` provide ready-made hooks and handlers for a
  job manager, database, worker pool, configuration, session and the state
  manager.
- `integration.ApplicationShutdown` ties all of these together.

```python
from pubdatahub.shutdown.integration import ApplicationShutdown, default_application_config

app = ApplicationShutdown(default_application_config())
app.initialize()
app.register_shutdown_hooks(job_manager, database, worker_pool, config_manager)
app.register_recovery_handlers(job_manager, database, config_manager, session_manager)
app.perform_recovery()
app.show_recovery_message()
# ... run the application ...
app.initiate_shutdown("user requested")
app.show_shutdown_message()
app.cleanup()
```

The components you pass in are duck-typed. These are the methods each one is
called with:

| Component | Shutdown methods | Recovery methods |
|---|---|---|
| Job manager | `pause_all_jobs()`, `save_job_states()`, `stop()` | `load_job_states()`, `get_paused_jobs()`, `resume_jobs(ids)`, `validate_jobs()` |
| Database | `wait_for_transactions(cancel_event)`, `close()` | `initialize()`, `verify_integrity()`, `repair_if_needed()`, `validate_connection()` |
| Worker pool | `stop_accepting_tasks()`, `wait_for_completion(cancel_event)`, `force_stop()` | — |
| Configuration | `validate_configuration()`, `save_configuration()` | `load_configuration()`, `apply_defaults()`, `save_configuration()`, `validate_configuration()` |
| Session | — | `load_session()`, `restore_command_history()`, `validate_session()` |

All timeouts are in seconds.

## What is not included

- There is no command-line program.
- There is no interactive prompt loop. The interactive session supplies
  completions and commands, but reading input is left to the caller.
- There are no concrete data sources, job manager, worker pool or database.

## Running the tests

```
pip install .[test]
pytest
```