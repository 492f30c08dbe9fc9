"""Top-level coordination of graceful shutdown and start-up recovery."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from .hooks import (
    ConfigurationShutdownHook,
    DatabaseShutdownHook,
    JobManagerShutdownHook,
    StateManagerShutdownHook,
    WorkerPoolShutdownHook,
)
from .manager import ManagerConfig, ShutdownManager, ShutdownStatus
from .recovery import RecoveryConfig, RecoveryManager, RecoveryStatus, RecoveryType
from .recovery_handlers import (
    ConfigurationRecoveryHandler,
    DatabaseRecoveryHandler,
    JobManagerRecoveryHandler,
    SessionRecoveryHandler,
    StateManagerRecoveryHandler,
)
from .state import ApplicationState, StateManager

log = logging.getLogger(__name__)

_WAIT_INTERVAL = 0.1


@dataclass
class ApplicationConfig:
    """Configuration of the shutdown and recovery system; timeouts in seconds."""

    storage_path: str = "./data"
    graceful_timeout: float = 30.0
    confirm_on_ctrl_c: bool = True
    auto_resume_jobs: bool = True
    verify_database_on_start: bool = True
    max_state_backups: int = 3


def default_application_config() -> ApplicationConfig:
    """Return the default application configuration."""
    return ApplicationConfig()


@dataclass
class ShutdownReport:
    """Summary of a shutdown run."""

    timestamp: datetime
    reason: str
    completed_hooks: list[str] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)
    duration: timedelta = timedelta(0)
    success: bool = False


class ApplicationShutdown:
    """Owns the state, shutdown and recovery managers of the application."""

    def __init__(self, config: ApplicationConfig | None = None) -> None:
        config = config if config is not None else default_application_config()
        self.config = config
        self.state_manager = StateManager(config.storage_path, config.max_state_backups)
        self.shutdown_manager = ShutdownManager(
            ManagerConfig(
                graceful_timeout=config.graceful_timeout,
                confirm_on_ctrl_c=config.confirm_on_ctrl_c,
                auto_register_signals=True,
            )
        )
        self.recovery_manager = RecoveryManager(
            self.state_manager,
            RecoveryConfig(
                auto_resume_jobs=config.auto_resume_jobs,
                verify_database_on_start=config.verify_database_on_start,
                recovery_timeout=60.0,
                max_recovery_attempts=3,
            ),
        )
        self.is_initialized = False

    def initialize(self) -> None:
        """Start signal handling; calling it again does nothing."""
        if self.is_initialized:
            return
        self.shutdown_manager.start()
        self.is_initialized = True
        log.info("Application shutdown system initialized")

    def register_shutdown_hooks(
        self,
        job_manager: Any = None,
        database: Any = None,
        worker_pool: Any = None,
        config_manager: Any = None,
    ) -> None:
        """Register hooks for the given components and the state manager."""
        register = self.shutdown_manager.register_shutdown_hook
        if job_manager is not None:
            register("job-manager", JobManagerShutdownHook(job_manager, 5 * 60.0))
        register("state-manager", StateManagerShutdownHook(self.state_manager, 10.0))
        if database is not None:
            register("database", DatabaseShutdownHook(database, 30.0))
        if worker_pool is not None:
            register("worker-pool", WorkerPoolShutdownHook(worker_pool, 2 * 60.0))
        if config_manager is not None:
            register("configuration", ConfigurationShutdownHook(config_manager, 5.0))

    def register_recovery_handlers(
        self,
        job_manager: Any = None,
        database: Any = None,
        config_manager: Any = None,
        session_manager: Any = None,
    ) -> None:
        """Register handlers for the given components and the state manager."""
        register = self.recovery_manager.register_recovery_handler
        register("state-manager", StateManagerRecoveryHandler(self.state_manager, 10.0))
        if database is not None:
            register("database", DatabaseRecoveryHandler(database, 30.0))
        if config_manager is not None:
            register("configuration", ConfigurationRecoveryHandler(config_manager, 10.0))
        if job_manager is not None:
            register("job-manager", JobManagerRecoveryHandler(job_manager, 60.0))
        if session_manager is not None:
            register("session", SessionRecoveryHandler(session_manager, 5.0))

    def perform_recovery(self) -> None:
        """Run start-up recovery, logging its outcome."""
        log.info("Starting application recovery...")
        try:
            self.recovery_manager.perform_recovery()
        except Exception as exc:
            log.error("Recovery failed: %s", exc)
            status = self.recovery_manager.get_recovery_status()
            log.error("Recovery errors: %s", [str(error) for error in status.errors])
            raise

        status = self.recovery_manager.get_recovery_status()
        log.info("Recovery completed successfully")
        log.info("Recovery type: %s", status.recovery_type)
        log.info("Completed handlers: %s", status.completed_handlers)
        if status.state_found:
            log.info("✅ Previous session state restored")
        else:
            log.info("🆕 Starting fresh - no previous state found")

    def initiate_shutdown(self, reason: str) -> None:
        self.shutdown_manager.initiate_shutdown(reason)

    def force_shutdown(self) -> None:
        self.shutdown_manager.force_shutdown()

    def is_shutting_down(self) -> bool:
        return self.shutdown_manager.is_shutting_down()

    def get_shutdown_status(self) -> ShutdownStatus:
        return self.shutdown_manager.get_shutdown_status()

    def get_recovery_status(self) -> RecoveryStatus:
        return self.recovery_manager.get_recovery_status()

    def save_application_state(self, app_state: ApplicationState) -> None:
        self.state_manager.save_application_state(app_state)

    def load_application_state(self) -> ApplicationState:
        return self.state_manager.load_application_state()

    def cleanup(self) -> None:
        """Stop signal handling; does nothing unless initialized."""
        if not self.is_initialized:
            return
        try:
            self.shutdown_manager.stop()
        except Exception as exc:
            log.warning("Error stopping shutdown manager: %s", exc)
        self.is_initialized = False
        log.info("Application shutdown system cleaned up")

    def wait_for_shutdown(self, timeout: float | None = None) -> bool:
        """Block until a shutdown begins; return False if ``timeout`` ran out."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.is_shutting_down():
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                time.sleep(min(_WAIT_INTERVAL, remaining))
            else:
                time.sleep(_WAIT_INTERVAL)
        return True

    def create_shutdown_report(self) -> ShutdownReport:
        status = self.get_shutdown_status()
        now = datetime.now()
        duration = now - status.start_time if status.start_time is not None else timedelta(0)
        return ShutdownReport(
            timestamp=now,
            reason=status.reason,
            completed_hooks=status.completed_hooks,
            errors=status.errors,
            duration=duration,
            success=not status.errors and not status.in_progress,
        )

    def show_recovery_message(self) -> list[str]:
        """Log a user-facing summary of the recovery and return its lines."""
        status = self.get_recovery_status()
        lines: list[tuple[int, str]] = []
        if status.recovery_type is RecoveryType.CLEAN:
            if status.state_found:
                lines.append((logging.INFO, "🔄 Recovering from previous session..."))
            else:
                lines.append((logging.INFO, "🆕 Starting fresh session..."))
        elif status.recovery_type is RecoveryType.CRASH:
            lines.append((logging.INFO, "🔧 Recovering from unexpected shutdown..."))
        elif status.recovery_type is RecoveryType.CORRUPTION:
            lines.append((logging.INFO, "⚠️  Recovering from corrupted state..."))

        lines.extend((logging.INFO, f"✅ Recovered: {name}") for name in status.completed_handlers)

        if status.errors:
            lines.append(
                (logging.WARNING, f"⚠️  Recovery completed with {len(status.errors)} errors")
            )
        else:
            lines.append((logging.INFO, "✅ Recovery completed successfully!"))
        return _emit(lines)

    def show_shutdown_message(self) -> list[str]:
        """Log a user-facing summary of the shutdown and return its lines."""
        status = self.get_shutdown_status()
        lines: list[tuple[int, str]] = []
        if status.in_progress:
            lines.append((logging.INFO, f"⏳ Shutting down gracefully... ({status.reason})"))
            lines.extend((logging.INFO, f"⏳ Stopping: {hook}") for hook in status.pending_hooks)
            lines.extend((logging.INFO, f"✅ Stopped: {hook}") for hook in status.completed_hooks)
        elif status.errors:
            lines.append(
                (logging.WARNING, f"⚠️  Shutdown completed with {len(status.errors)} errors")
            )
        else:
            lines.append((logging.INFO, "✅ Graceful shutdown complete!"))
        return _emit(lines)


def _emit(lines: list[tuple[int, str]]) -> list[str]:
    for level, text in lines:
        log.log(level, text)
    return [text for _, text in lines]