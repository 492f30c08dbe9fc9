"""Ready-made recovery handlers for the common application components."""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from .recovery import RecoveryError

log = logging.getLogger(__name__)

_VALIDATION_COMPONENT = "validation_test"


def _timeout(value: float | timedelta | None, default: float) -> float:
    if value is None:
        return default
    seconds = value.total_seconds() if isinstance(value, timedelta) else float(value)
    return seconds or default


class JobManagerRecoveryHandler:
    """Reloads persisted jobs and resumes those that were paused."""

    name = "job-manager-recovery"
    priority = 20

    def __init__(self, job_manager: Any, timeout: float | timedelta | None = None) -> None:
        self.job_manager = job_manager
        self.timeout = _timeout(timeout, 60.0)

    def recover(self, cancel_event: threading.Event, state_manager: Any) -> None:
        log.info("Recovering job manager...")
        log.info("Loading job states...")
        try:
            self.job_manager.load_job_states()
        except Exception as exc:
            raise RecoveryError(f"failed to load job states: {exc}") from exc

        try:
            paused = list(self.job_manager.get_paused_jobs())
        except Exception as exc:
            raise RecoveryError(f"failed to get paused jobs: {exc}") from exc

        if paused:
            log.info("Found %d paused jobs to resume", len(paused))
            try:
                self.job_manager.resume_jobs(paused)
            except Exception as exc:
                raise RecoveryError(f"failed to resume jobs: {exc}") from exc
            log.info("Resumed %d jobs", len(paused))
        log.info("Job manager recovery completed")

    def validate(self) -> None:
        self.job_manager.validate_jobs()


class DatabaseRecoveryHandler:
    """Reopens the database, verifying its integrity and repairing it if needed."""

    name = "database-recovery"
    priority = 10

    def __init__(self, database: Any, timeout: float | timedelta | None = None) -> None:
        self.database = database
        self.timeout = _timeout(timeout, 30.0)

    def recover(self, cancel_event: threading.Event, state_manager: Any) -> None:
        log.info("Recovering database...")
        log.info("Initializing database connection...")
        try:
            self.database.initialize()
        except Exception as exc:
            raise RecoveryError(f"failed to initialize database: {exc}") from exc

        log.info("Verifying database integrity...")
        try:
            self.database.verify_integrity()
        except Exception as exc:
            log.warning("Database integrity issues detected: %s", exc)
            log.info("Attempting database repair...")
            try:
                self.database.repair_if_needed()
            except Exception as repair_exc:
                raise RecoveryError(f"failed to repair database: {repair_exc}") from repair_exc
            log.info("Database repair completed")
        log.info("Database recovery completed")

    def validate(self) -> None:
        self.database.validate_connection()


class StateManagerRecoveryHandler:
    """Checks every saved state; corrupted ones are restored from backup or cleared."""

    name = "state-manager-recovery"
    priority = 5

    def __init__(self, state_manager: Any, timeout: float | timedelta | None = None) -> None:
        self.state_manager = state_manager
        self.timeout = _timeout(timeout, 10.0)

    def recover(self, cancel_event: threading.Event, state_manager: Any) -> None:
        log.info("Recovering state manager...")
        for component in state_manager.list_states():
            log.debug("Validating state for component: %s", component)
            try:
                state_manager.load_state(component)
            except Exception as exc:
                log.warning("Corrupted state detected for component %s: %s", component, exc)
                try:
                    self._restore_from_backup(state_manager, component)
                except RecoveryError as restore_exc:
                    log.error("Failed to restore %s from backup: %s", component, restore_exc)
                    try:
                        state_manager.clear_state(component)
                    except Exception as clear_exc:
                        log.error(
                            "Failed to clear corrupted state for %s: %s", component, clear_exc
                        )
        log.info("State manager recovery completed")

    def validate(self) -> None:
        """Check that a test state can be saved and loaded again."""
        probe = {"test": True, "timestamp": datetime.now()}
        try:
            self.state_manager.save_state(_VALIDATION_COMPONENT, probe)
        except Exception as exc:
            raise RecoveryError(f"failed to save validation test state: {exc}") from exc
        try:
            self.state_manager.load_state(_VALIDATION_COMPONENT)
        except Exception as exc:
            raise RecoveryError(f"failed to load validation test state: {exc}") from exc
        try:
            self.state_manager.clear_state(_VALIDATION_COMPONENT)
        except Exception as exc:
            log.warning("Failed to clean up validation test state: %s", exc)

    def _restore_from_backup(self, state_manager: Any, component: str) -> None:
        """Copy the newest valid backup of ``component`` over its state file."""
        log.info("Attempting to restore %s from backup", component)
        backup_path = getattr(state_manager, "backup_path", None)
        state_path = getattr(state_manager, "state_path", None)
        if backup_path is None or state_path is None:
            raise RecoveryError("state manager keeps no backups")
        file_name = f"{component}.json"
        try:
            backups = sorted(
                (entry for entry in Path(backup_path).iterdir() if entry.is_dir()),
                key=lambda entry: entry.name,
                reverse=True,
            )
        except OSError as exc:
            raise RecoveryError(f"failed to list backups: {exc}") from exc

        for backup in backups:
            candidate = backup / file_name
            try:
                data = candidate.read_bytes()
                json.loads(data)
            except (OSError, ValueError):
                continue
            target = Path(state_path) / file_name
            try:
                target.write_bytes(data)
                os.chmod(target, getattr(state_manager, "permissions", 0o644))
            except OSError as exc:
                raise RecoveryError(f"failed to restore {component}: {exc}") from exc
            log.info("Restored %s from backup %s", component, backup.name)
            return
        raise RecoveryError(f"no valid backup found for component: {component}")


class ConfigurationRecoveryHandler:
    """Loads the configuration, falling back to saved defaults."""

    name = "configuration-recovery"
    priority = 15

    def __init__(self, config_manager: Any, timeout: float | timedelta | None = None) -> None:
        self.config_manager = config_manager
        self.timeout = _timeout(timeout, 10.0)

    def recover(self, cancel_event: threading.Event, state_manager: Any) -> None:
        log.info("Recovering configuration...")
        log.info("Loading configuration...")
        try:
            self.config_manager.load_configuration()
        except Exception as exc:
            log.warning("Failed to load configuration: %s", exc)
            log.info("Applying default configuration...")
            try:
                self.config_manager.apply_defaults()
            except Exception as defaults_exc:
                raise RecoveryError(
                    f"failed to apply default configuration: {defaults_exc}"
                ) from defaults_exc
            try:
                self.config_manager.save_configuration()
            except Exception as save_exc:
                log.warning("Failed to save default configuration: %s", save_exc)

        try:
            self.config_manager.validate_configuration()
        except Exception as exc:
            raise RecoveryError(f"configuration validation failed: {exc}") from exc
        log.info("Configuration recovery completed")

    def validate(self) -> None:
        self.config_manager.validate_configuration()


class SessionRecoveryHandler:
    """Restores the user session and command history; failures are not fatal."""

    name = "session-recovery"
    priority = 30

    def __init__(self, session_manager: Any, timeout: float | timedelta | None = None) -> None:
        self.session_manager = session_manager
        self.timeout = _timeout(timeout, 5.0)

    def recover(self, cancel_event: threading.Event, state_manager: Any) -> None:
        log.info("Recovering user session...")
        try:
            self.session_manager.load_session()
        except Exception as exc:
            log.warning("Failed to load session: %s", exc)
        try:
            self.session_manager.restore_command_history()
        except Exception as exc:
            log.warning("Failed to restore command history: %s", exc)
        log.info("Session recovery completed")

    def validate(self) -> None:
        self.session_manager.validate_session()