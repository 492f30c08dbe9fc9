"""Ready-made shutdown hooks for the common application components."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any

from .manager import CheckpointHook, ShutdownError, ShutdownHook
from .state import ApplicationState

log = logging.getLogger(__name__)


def _timeout(value: float | timedelta | None, default: float) -> float:
    if value is None:
        return default
    seconds = value.total_seconds() if isinstance(value, timedelta) else float(value)
    return seconds or default


class JobManagerShutdownHook(ShutdownHook, CheckpointHook):
    """Pauses jobs, saves their state and stops the job manager."""

    name = "job-manager"
    priority = 10

    def __init__(self, job_manager: Any, timeout: float | timedelta | None = None) -> None:
        self.job_manager = job_manager
        self.timeout = _timeout(timeout, 5 * 60.0)

    def shutdown(self, cancel_event: threading.Event) -> None:
        log.info("Shutting down job manager...")
        log.info("Pausing all running jobs...")
        try:
            self.job_manager.pause_all_jobs()
        except Exception as exc:
            log.warning("Failed to pause all jobs: %s", exc)

        log.info("Saving job states...")
        try:
            self.job_manager.save_job_states()
        except Exception as exc:
            raise ShutdownError(f"failed to save job states: {exc}") from exc

        log.info("Stopping job manager...")
        try:
            self.job_manager.stop()
        except Exception as exc:
            raise ShutdownError(f"failed to stop job manager: {exc}") from exc
        log.info("Job manager shutdown completed")

    def save_checkpoint(self) -> None:
        log.info("Saving job manager checkpoint...")
        self.job_manager.save_job_states()


class DatabaseShutdownHook(ShutdownHook):
    """Waits for pending transactions, then closes the database."""

    name = "database"
    priority = 50

    def __init__(self, database: Any, timeout: float | timedelta | None = None) -> None:
        self.database = database
        self.timeout = _timeout(timeout, 30.0)

    def shutdown(self, cancel_event: threading.Event) -> None:
        log.info("Shutting down database connections...")
        log.info("Waiting for pending transactions...")
        try:
            self.database.wait_for_transactions(cancel_event)
        except Exception as exc:
            log.warning("Some transactions did not complete: %s", exc)

        log.info("Closing database connections...")
        try:
            self.database.close()
        except Exception as exc:
            raise ShutdownError(f"failed to close database: {exc}") from exc
        log.info("Database shutdown completed")


class StateManagerShutdownHook(ShutdownHook, CheckpointHook):
    """Backs up state and saves the application state marked as a clean shutdown.

    Set ``app_state`` to the :class:`ApplicationState` that should be saved.
    """

    name = "state-manager"
    priority = 20

    def __init__(self, state_manager: Any, timeout: float | timedelta | None = None) -> None:
        self.state_manager = state_manager
        self.app_state: ApplicationState | None = None
        self.timeout = _timeout(timeout, 10.0)

    def shutdown(self, cancel_event: threading.Event) -> None:
        log.info("Saving application state...")
        try:
            self.state_manager.backup_state()
        except Exception as exc:
            log.warning("Failed to create state backup: %s", exc)

        if self.app_state is not None:
            now = datetime.now()
            self.app_state.application.clean_shutdown = True
            self.app_state.application.shutdown_time = now
            self.app_state.timestamp = now
            try:
                self.state_manager.save_state("application", self.app_state.to_dict())
            except Exception as exc:
                raise ShutdownError(f"failed to save application state: {exc}") from exc
        log.info("State manager shutdown completed")

    def save_checkpoint(self) -> None:
        log.info("Saving state manager checkpoint...")
        if self.app_state is not None:
            self.app_state.timestamp = datetime.now()
            self.state_manager.save_state("application_checkpoint", self.app_state.to_dict())


class WorkerPoolShutdownHook(ShutdownHook):
    """Stops a worker pool, forcing it down if tasks do not finish."""

    name = "worker-pool"
    priority = 30

    def __init__(self, worker_pool: Any, timeout: float | timedelta | None = None) -> None:
        self.worker_pool = worker_pool
        self.timeout = _timeout(timeout, 2 * 60.0)

    def shutdown(self, cancel_event: threading.Event) -> None:
        log.info("Shutting down worker pool...")
        log.info("Stopping task acceptance...")
        try:
            self.worker_pool.stop_accepting_tasks()
        except Exception as exc:
            log.warning("Failed to stop task acceptance: %s", exc)

        log.info("Waiting for task completion...")
        try:
            self.worker_pool.wait_for_completion(cancel_event)
        except Exception as exc:
            log.warning("Tasks did not complete in time: %s", exc)
            log.info("Force stopping worker pool...")
            try:
                self.worker_pool.force_stop()
            except Exception as force_exc:
                raise ShutdownError(
                    f"failed to force stop worker pool: {force_exc}"
                ) from force_exc
        log.info("Worker pool shutdown completed")


class ConfigurationShutdownHook(ShutdownHook, CheckpointHook):
    """Validates and saves the configuration."""

    name = "configuration"
    priority = 40

    def __init__(self, config_manager: Any, timeout: float | timedelta | None = None) -> None:
        self.config_manager = config_manager
        self.timeout = _timeout(timeout, 5.0)

    def shutdown(self, cancel_event: threading.Event) -> None:
        log.info("Saving configuration...")
        try:
            self.config_manager.validate_configuration()
        except Exception as exc:
            log.warning("Configuration validation failed: %s", exc)
        try:
            self.config_manager.save_configuration()
        except Exception as exc:
            raise ShutdownError(f"failed to save configuration: {exc}") from exc
        log.info("Configuration shutdown completed")

    def save_checkpoint(self) -> None:
        log.info("Saving configuration checkpoint...")
        self.config_manager.save_configuration()