"""Recovery of application components after a shutdown or crash."""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from .state import ApplicationState

log = logging.getLogger(__name__)

_DEFAULT_HANDLER_TIMEOUT = 30.0


def _seconds(value: float | timedelta | None) -> float:
    if value is None:
        return 0.0
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class RecoveryError(Exception):
    """Raised when recovery cannot proceed or fails validation."""


class RecoveryType(str, Enum):
    """The kind of recovery being performed."""

    CLEAN = "clean"
    CRASH = "crash"
    CORRUPTION = "corruption"
    MANUAL = "manual"

    def __str__(self) -> str:
        return self.value


@dataclass
class RecoveryStatus:
    """State of the recovery process."""

    in_progress: bool = False
    start_time: datetime | None = None
    completed_handlers: list[str] = field(default_factory=list)
    pending_handlers: list[str] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)
    recovery_type: RecoveryType | None = None
    state_found: bool = False


@dataclass
class RecoveryConfig:
    """Configuration of the recovery manager; timeouts are in seconds."""

    auto_resume_jobs: bool = True
    verify_database_on_start: bool = True
    recovery_timeout: float = 60.0
    max_recovery_attempts: int = 3


def default_recovery_config() -> RecoveryConfig:
    """Return the default recovery configuration."""
    return RecoveryConfig()


@dataclass
class RecoveryReport:
    """Summary of a recovery run."""

    timestamp: datetime
    recovery_type: RecoveryType | None
    state_found: bool
    completed_handlers: list[str]
    errors: list[Exception]
    duration: timedelta
    success: bool


class RecoveryManager:
    """Runs registered recovery handlers in priority order, lowest first.

    A handler has ``name``, ``priority`` and ``timeout`` attributes and the
    methods ``recover(cancel_event, state_manager)`` and ``validate()``.
    """

    def __init__(self, state_manager: Any, config: RecoveryConfig | None = None) -> None:
        self.state_manager = state_manager
        self.config = config if config is not None else default_recovery_config()
        self._handlers: dict[str, Any] = {}
        self._handlers_lock = threading.Lock()
        self._status = RecoveryStatus()
        self._status_lock = threading.Lock()

    def register_recovery_handler(self, name: str, handler: Any) -> None:
        """Register ``handler`` under a unique ``name``."""
        if not name:
            raise ValueError("handler name cannot be empty")
        if handler is None:
            raise ValueError("handler cannot be None")
        with self._handlers_lock:
            if name in self._handlers:
                raise ValueError(f"handler {name} already registered")
            self._handlers[name] = handler
        log.info("Registered recovery handler: %s (priority: %d)", name, handler.priority)

    def perform_recovery(self) -> None:
        """Run every handler; handler failures are recorded in the status."""
        with self._status_lock:
            if self._status.in_progress:
                raise RecoveryError("recovery already in progress")
            self._status = RecoveryStatus(in_progress=True, start_time=datetime.now())

        log.info("Starting application recovery...")
        recovery_type = self._determine_recovery_type()
        state_found = len(self.state_manager.list_states()) > 0
        with self._status_lock:
            self._status.recovery_type = recovery_type
            self._status.state_found = state_found
        log.info("Recovery type: %s", recovery_type)

        deadline = time.monotonic() + _seconds(self.config.recovery_timeout)
        with self._handlers_lock:
            handlers = sorted(self._handlers.values(), key=lambda h: h.priority)
        with self._status_lock:
            self._status.pending_handlers.extend(h.name for h in handlers)

        for handler in handlers:
            try:
                self._execute_handler(handler, deadline)
            except RecoveryError as exc:
                error = RecoveryError(f"handler {handler.name} failed: {exc}")
                error.__cause__ = exc
                with self._status_lock:
                    self._status.errors.append(error)
                log.error("Recovery handler %s failed: %s", handler.name, exc)

            with self._status_lock:
                if handler.name in self._status.pending_handlers:
                    self._status.pending_handlers.remove(handler.name)
                self._status.completed_handlers.append(handler.name)

        try:
            self.validate_recovery()
        except RecoveryError as exc:
            raise RecoveryError(f"recovery validation failed: {exc}") from exc

        with self._status_lock:
            self._status.in_progress = False
        log.info("Application recovery completed successfully")

    def get_recovery_status(self) -> RecoveryStatus:
        """Return a copy of the current status."""
        with self._status_lock:
            status = self._status
            return replace(
                status,
                completed_handlers=list(status.completed_handlers),
                pending_handlers=list(status.pending_handlers),
                errors=list(status.errors),
            )

    def validate_recovery(self) -> None:
        """Ask every handler to validate its recovery."""
        with self._handlers_lock:
            handlers = list(self._handlers.items())
        for name, handler in handlers:
            try:
                handler.validate()
            except Exception as exc:
                raise RecoveryError(f"validation failed for handler {name}: {exc}") from exc
        log.info("Recovery validation completed successfully")

    def recover_from_backup(self, backup_name: str) -> None:
        """Restore state from ``backup_name`` and then run a normal recovery."""
        log.info("Performing recovery from backup: %s", backup_name)
        try:
            self.state_manager.restore_from_backup(backup_name)
        except Exception as exc:
            raise RecoveryError(f"failed to restore from backup: {exc}") from exc
        self.perform_recovery()

    def create_recovery_report(self) -> RecoveryReport:
        status = self.get_recovery_status()
        now = datetime.now()
        duration = now - status.start_time if status.start_time is not None else timedelta(0)
        return RecoveryReport(
            timestamp=now,
            recovery_type=status.recovery_type,
            state_found=status.state_found,
            completed_handlers=status.completed_handlers,
            errors=status.errors,
            duration=duration,
            success=not status.errors and not status.in_progress,
        )

    def _determine_recovery_type(self) -> RecoveryType:
        try:
            data = self.state_manager.load_state("application")
            if not isinstance(data, dict):
                raise ValueError("application state is not an object")
            app_state = ApplicationState.from_dict(data)
        except Exception as exc:
            log.warning("Failed to load application state: %s", exc)
            return RecoveryType.CRASH

        if app_state.application.clean_shutdown:
            return RecoveryType.CLEAN
        if self._has_corruption_indicators(app_state):
            return RecoveryType.CORRUPTION
        return RecoveryType.CRASH

    def _has_corruption_indicators(self, app_state: ApplicationState) -> bool:
        stamp = app_state.timestamp
        if stamp is None:
            return True
        now = datetime.now(stamp.tzinfo) if stamp.tzinfo is not None else datetime.now()
        if stamp > now:
            return True
        if app_state.application.pid == os.getpid():
            return True
        for component in self.state_manager.list_states():
            try:
                self.state_manager.load_state(component)
            except Exception as exc:
                log.warning("Corruption detected in component %s: %s", component, exc)
                return True
        return False

    def _execute_handler(self, handler: Any, deadline: float) -> None:
        handler_timeout = _seconds(handler.timeout) or _DEFAULT_HANDLER_TIMEOUT
        limit = min(time.monotonic() + handler_timeout, deadline)
        cancel = threading.Event()
        finished = threading.Event()
        failure: list[Exception] = []

        def run() -> None:
            try:
                handler.recover(cancel, self.state_manager)
            except Exception as exc:
                failure.append(exc)
            finally:
                finished.set()

        log.info("Executing recovery handler: %s (timeout: %gs)", handler.name, handler_timeout)
        threading.Thread(target=run, name=f"recovery-{handler.name}", daemon=True).start()

        if not finished.wait(max(limit - time.monotonic(), 0.0)):
            cancel.set()
            raise RecoveryError(f"handler timed out after {handler_timeout:g}s")
        if failure:
            raise RecoveryError(f"handler execution failed: {failure[0]}") from failure[0]
        log.info("Recovery handler completed: %s", handler.name)