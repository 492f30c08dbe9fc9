"""Persistence of component state as JSON files, with timestamped backups."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

_EXT = ".json"
_BACKUP_FORMAT = "%Y%m%d_%H%M%S"
_FRACTION = re.compile(r"\.(\d+)")


class StateError(Exception):
    """Raised when state cannot be saved, loaded or restored."""


def _encode_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _decode_time(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    return None if parsed.year == 1 else parsed


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"cannot serialise {type(value).__name__}")


@dataclass
class ApplicationInfo:
    """Basic information about the running application."""

    version: str = ""
    shutdown_time: datetime | None = None
    clean_shutdown: bool = False
    pid: int = 0


@dataclass
class JobProgress:
    """Progress of a persisted job."""

    current: int = 0
    total: int = 0
    last_id: str = ""
    message: str = ""
    percentage: float = 0.0


@dataclass
class JobState:
    """Persisted state of one job."""

    id: str = ""
    type: str = ""
    source: str = ""
    status: str = ""
    progress: JobProgress = field(default_factory=JobProgress)
    started_at: datetime | None = None
    paused_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionState:
    """Persisted user session state."""

    command_history: list[str] = field(default_factory=list)
    active_queries: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    working_dir: str = ""


def _job_to_dict(job: JobState) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": job.id,
        "type": job.type,
        "source": job.source,
        "status": job.status,
        "progress": asdict(job.progress),
        "started_at": _encode_time(job.started_at),
        "metadata": dict(job.metadata),
    }
    if job.paused_at is not None:
        data["paused_at"] = _encode_time(job.paused_at)
    return data


def _job_from_dict(data: dict[str, Any]) -> JobState:
    progress = data.get("progress") or {}
    return JobState(
        id=data.get("id", ""),
        type=data.get("type", ""),
        source=data.get("source", ""),
        status=data.get("status", ""),
        progress=JobProgress(
            current=progress.get("current", 0),
            total=progress.get("total", 0),
            last_id=progress.get("last_id", ""),
            message=progress.get("message", ""),
            percentage=progress.get("percentage", 0.0),
        ),
        started_at=_decode_time(data.get("started_at")),
        paused_at=_decode_time(data.get("paused_at")),
        metadata=dict(data.get("metadata") or {}),
    )


@dataclass
class ApplicationState:
    """The complete persisted state of the application."""

    application: ApplicationInfo = field(default_factory=ApplicationInfo)
    jobs: dict[str, JobState] = field(default_factory=dict)
    configuration: dict[str, Any] = field(default_factory=dict)
    session: SessionState = field(default_factory=SessionState)
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form of this state."""
        app = self.application
        return {
            "application": {
                "version": app.version,
                "shutdown_time": _encode_time(app.shutdown_time),
                "clean_shutdown": app.clean_shutdown,
                "pid": app.pid,
            },
            "jobs": {name: _job_to_dict(job) for name, job in self.jobs.items()},
            "configuration": dict(self.configuration),
            "session": {
                "command_history": list(self.session.command_history),
                "active_queries": list(self.session.active_queries),
                "variables": dict(self.session.variables),
                "working_dir": self.session.working_dir,
            },
            "timestamp": _encode_time(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApplicationState":
        """Build a state from its JSON form; missing fields take defaults."""
        app = data.get("application") or {}
        session = data.get("session") or {}
        return cls(
            application=ApplicationInfo(
                version=app.get("version", ""),
                shutdown_time=_decode_time(app.get("shutdown_time")),
                clean_shutdown=bool(app.get("clean_shutdown", False)),
                pid=app.get("pid", 0),
            ),
            jobs={name: _job_from_dict(job) for name, job in (data.get("jobs") or {}).items()},
            configuration=dict(data.get("configuration") or {}),
            session=SessionState(
                command_history=list(session.get("command_history") or []),
                active_queries=list(session.get("active_queries") or []),
                variables=dict(session.get("variables") or {}),
                working_dir=session.get("working_dir", ""),
            ),
            timestamp=_decode_time(data.get("timestamp")),
        )


@dataclass
class StateInfo:
    """Information about one state file."""

    component: str
    size: int
    modified_time: datetime
    is_valid: bool


class StateManager:
    """Saves component state as JSON under ``<storage>/state`` and keeps backups."""

    def __init__(self, storage_path: str | os.PathLike[str], max_backups: int) -> None:
        self.state_path = Path(storage_path) / "state"
        self.backup_path = self.state_path / "backups"
        self.max_backups = max_backups
        self.permissions = 0o644
        try:
            self.state_path.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as exc:
            raise StateError(f"failed to create state directory: {exc}") from exc
        try:
            self.backup_path.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as exc:
            raise StateError(f"failed to create backup directory: {exc}") from exc

    def _file(self, component: str) -> Path:
        return self.state_path / f"{component}{_EXT}"

    def save_state(self, component: str, state: Any) -> None:
        """Write ``state`` as JSON, atomically replacing any earlier file."""
        try:
            text = json.dumps(state, indent=2, default=_json_default)
        except (TypeError, ValueError) as exc:
            raise StateError(f"failed to marshal state: {exc}") from exc
        target = self._file(component)
        temp = target.with_name(target.name + ".tmp")
        try:
            temp.write_text(text, encoding="utf-8")
            os.chmod(temp, self.permissions)
        except OSError as exc:
            raise StateError(f"failed to write temporary state file: {exc}") from exc
        try:
            os.replace(temp, target)
        except OSError as exc:
            temp.unlink(missing_ok=True)
            raise StateError(f"failed to commit state file: {exc}") from exc
        log.debug("Saved state for component: %s", component)

    def load_state(self, component: str) -> Any:
        """Return the decoded JSON state of ``component``."""
        try:
            text = self._file(component).read_text(encoding="utf-8")
        except FileNotFoundError:
            raise StateError(f"state file not found for component: {component}") from None
        except OSError as exc:
            raise StateError(f"failed to read state file: {exc}") from exc
        try:
            state = json.loads(text)
        except ValueError as exc:
            raise StateError(f"failed to unmarshal state: {exc}") from exc
        log.debug("Loaded state for component: %s", component)
        return state

    def clear_state(self, component: str) -> None:
        """Delete the state of ``component``; a missing file is not an error."""
        try:
            self._file(component).unlink(missing_ok=True)
        except OSError as exc:
            raise StateError(f"failed to remove state file: {exc}") from exc
        log.debug("Cleared state for component: %s", component)

    def list_states(self) -> list[str]:
        """Return the names of components with saved state, sorted."""
        try:
            entries = sorted(self.state_path.iterdir())
        except OSError as exc:
            log.warning("Failed to read state directory: %s", exc)
            return []
        return [entry.stem for entry in entries if entry.is_file() and entry.suffix == _EXT]

    def backup_state(self) -> str:
        """Copy every state file to a timestamped backup; return its name."""
        name = datetime.now().strftime(_BACKUP_FORMAT)
        backup_dir = self.backup_path / name
        try:
            backup_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as exc:
            raise StateError(f"failed to create backup directory: {exc}") from exc
        self._copy_json_files(self.state_path, backup_dir, "backup")
        try:
            self._cleanup_old_backups()
        except OSError as exc:
            log.warning("Failed to cleanup old backups: %s", exc)
        log.info("Created state backup: %s", name)
        return name

    def restore_from_backup(self, backup_name: str) -> None:
        """Copy the files of backup ``backup_name`` back into the state directory."""
        backup_dir = self.backup_path / backup_name
        if not backup_dir.exists():
            raise StateError(f"backup not found: {backup_name}")
        self._copy_json_files(backup_dir, self.state_path, "restore")
        log.info("Restored state from backup: %s", backup_name)

    def save_application_state(self, app_state: ApplicationState) -> None:
        self.save_state("application", app_state.to_dict())

    def load_application_state(self) -> ApplicationState:
        data = self.load_state("application")
        if not isinstance(data, dict):
            raise StateError("failed to unmarshal state: application state is not an object")
        try:
            return ApplicationState.from_dict(data)
        except (TypeError, ValueError, AttributeError) as exc:
            raise StateError(f"failed to unmarshal state: {exc}") from exc

    def validate_state(self, component: str) -> None:
        """Raise StateError unless the state file holds valid JSON."""
        try:
            text = self._file(component).read_text(encoding="utf-8")
        except OSError as exc:
            raise StateError(f"failed to read state file: {exc}") from exc
        try:
            json.loads(text)
        except ValueError as exc:
            raise StateError(f"invalid JSON in state file: {exc}") from exc

    def get_state_info(self, component: str) -> StateInfo:
        """Return size, modification time and validity of a state file."""
        try:
            stat = self._file(component).stat()
        except OSError as exc:
            raise StateError(f"failed to stat state file: {exc}") from exc
        try:
            self.validate_state(component)
            valid = True
        except StateError:
            valid = False
        return StateInfo(
            component=component,
            size=stat.st_size,
            modified_time=datetime.fromtimestamp(stat.st_mtime),
            is_valid=valid,
        )

    def _copy_json_files(self, source: Path, target: Path, action: str) -> None:
        try:
            entries = sorted(source.iterdir())
        except OSError as exc:
            raise StateError(f"failed to read directory {source}: {exc}") from exc
        for entry in entries:
            if not entry.is_file() or entry.suffix != _EXT:
                continue
            destination = target / entry.name
            try:
                destination.write_bytes(entry.read_bytes())
                os.chmod(destination, self.permissions)
            except OSError as exc:
                raise StateError(f"failed to {action} file {entry.name}: {exc}") from exc

    def _cleanup_old_backups(self) -> None:
        backups = sorted(entry.name for entry in self.backup_path.iterdir() if entry.is_dir())
        excess = len(backups) - self.max_backups
        for name in backups[: max(excess, 0)]:
            try:
                shutil.rmtree(self.backup_path / name)
            except OSError as exc:
                log.warning("Failed to remove old backup %s: %s", name, exc)
            else:
                log.debug("Removed old backup: %s", name)