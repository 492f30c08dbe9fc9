"""Coordinated, prioritised graceful shutdown with signal handling."""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

log = logging.getLogger(__name__)

_DEFAULT_HOOK_TIMEOUT = 10.0
_FORCE_QUIT_WINDOW = 5.0
_POLL_INTERVAL = 0.05


def _seconds(value: float | timedelta | None) -> float:
    if value is None:
        return 0.0
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class ShutdownError(Exception):
    """Raised when a shutdown cannot proceed or a hook fails."""


@dataclass
class ShutdownStatus:
    """State of the shutdown process."""

    in_progress: bool = False
    start_time: datetime | None = None
    completed_hooks: list[str] = field(default_factory=list)
    pending_hooks: list[str] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)
    reason: str = ""


@dataclass
class ManagerConfig:
    """Configuration of the shutdown manager; timeouts are in seconds."""

    graceful_timeout: float = 30.0
    confirm_on_ctrl_c: bool = True
    auto_register_signals: bool = True


def default_manager_config() -> ManagerConfig:
    """Return the default manager configuration."""
    return ManagerConfig()


class ShutdownHook(ABC):
    """A component to stop on shutdown; lower priorities run first.

    ``timeout`` is in seconds (or a timedelta); zero means the default of 10s.
    """

    name: str
    priority: int
    timeout: float

    @abstractmethod
    def shutdown(self, cancel_event: threading.Event) -> None:
        """Stop the component; ``cancel_event`` is set when time runs out."""


class CheckpointHook(ABC):
    """A hook that can save its state without shutting down."""

    @abstractmethod
    def save_checkpoint(self) -> None:
        """Persist the current state."""

    @classmethod
    def __subclasshook__(cls, subclass: type) -> Any:
        if cls is CheckpointHook:
            return callable(getattr(subclass, "save_checkpoint", None))
        return NotImplemented


class ShutdownManager:
    """Runs registered shutdown hooks in priority order within time limits."""

    def __init__(self, config: ManagerConfig | None = None) -> None:
        self.config = config if config is not None else default_manager_config()
        self._hooks: dict[str, ShutdownHook] = {}
        self._hooks_lock = threading.Lock()
        self._status = ShutdownStatus()
        self._status_lock = threading.Lock()
        self._stopped = threading.Event()
        self._force = threading.Event()
        self._previous_handlers: dict[int, Any] = {}
        self._force_quit_deadline = float("-inf")

    def start(self) -> None:
        """Install signal handlers if the configuration asks for them."""
        if self.config.auto_register_signals:
            self._install_signal_handlers()
        log.info("Shutdown manager started")

    def stop(self) -> None:
        """Restore previous signal handlers and cancel pending work."""
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous_handlers.clear()
        self._stopped.set()

    def register_shutdown_hook(self, name: str, hook: ShutdownHook) -> None:
        """Register ``hook`` under a unique ``name``."""
        if not name:
            raise ValueError("hook name cannot be empty")
        if hook is None:
            raise ValueError("hook cannot be None")
        with self._hooks_lock:
            if name in self._hooks:
                raise ValueError(f"hook {name} already registered")
            self._hooks[name] = hook
        log.info("Registered shutdown hook: %s (priority: %d)", name, hook.priority)

    def initiate_shutdown(self, reason: str) -> None:
        """Run every hook in priority order; hook failures land in the status."""
        with self._status_lock:
            if self._status.in_progress:
                raise ShutdownError("shutdown already in progress")
            self._status = ShutdownStatus(
                in_progress=True, start_time=datetime.now(), reason=reason
            )
        log.info("Initiating graceful shutdown: %s", reason)
        self._perform_shutdown()

    def force_shutdown(self) -> None:
        """Ask a running shutdown to stop after the current hook."""
        log.warning("Force shutdown initiated")
        self._force.set()

    def is_shutting_down(self) -> bool:
        with self._status_lock:
            return self._status.in_progress

    def get_shutdown_status(self) -> ShutdownStatus:
        """Return a copy of the current status."""
        with self._status_lock:
            status = self._status
            return replace(
                status,
                completed_hooks=list(status.completed_hooks),
                pending_hooks=list(status.pending_hooks),
                errors=list(status.errors),
            )

    def save_checkpoint(self) -> list[str]:
        """Checkpoint every hook that supports it; return those that succeeded."""
        log.info("Saving application state checkpoint...")
        with self._hooks_lock:
            hooks = list(self._hooks.items())
        saved = []
        for name, hook in hooks:
            if not isinstance(hook, CheckpointHook):
                continue
            try:
                hook.save_checkpoint()
            except Exception as exc:
                log.warning("Failed to save checkpoint for %s: %s", name, exc)
            else:
                log.info("Checkpoint saved for %s", name)
                saved.append(name)
        return saved

    def _sorted_hooks(self) -> list[ShutdownHook]:
        with self._hooks_lock:
            return sorted(self._hooks.values(), key=lambda hook: hook.priority)

    def _perform_shutdown(self) -> None:
        deadline = time.monotonic() + _seconds(self.config.graceful_timeout)
        hooks = self._sorted_hooks()
        with self._status_lock:
            self._status.pending_hooks.extend(hook.name for hook in hooks)

        for hook in hooks:
            try:
                self._execute_hook(hook, deadline)
            except ShutdownError as exc:
                error = ShutdownError(f"hook {hook.name} failed: {exc}")
                error.__cause__ = exc
                with self._status_lock:
                    self._status.errors.append(error)
                log.error("Shutdown hook %s failed: %s", hook.name, exc)

            with self._status_lock:
                if hook.name in self._status.pending_hooks:
                    self._status.pending_hooks.remove(hook.name)
                self._status.completed_hooks.append(hook.name)

            if self._force.is_set():
                self._force.clear()
                log.warning("Force shutdown during hook execution")
                raise ShutdownError("shutdown forced")

        log.info("Graceful shutdown completed")

    def _execute_hook(self, hook: ShutdownHook, deadline: float) -> None:
        hook_timeout = _seconds(hook.timeout) or _DEFAULT_HOOK_TIMEOUT
        limit = min(time.monotonic() + hook_timeout, deadline)
        cancel = threading.Event()
        finished = threading.Event()
        failure: list[Exception] = []

        def run() -> None:
            try:
                hook.shutdown(cancel)
            except Exception as exc:
                failure.append(exc)
            finally:
                finished.set()

        log.info("Executing shutdown hook: %s (timeout: %gs)", hook.name, hook_timeout)
        threading.Thread(target=run, name=f"shutdown-{hook.name}", daemon=True).start()

        while not finished.is_set():
            remaining = limit - time.monotonic()
            if remaining <= 0 or self._stopped.is_set():
                cancel.set()
                raise ShutdownError(f"hook timed out after {hook_timeout:g}s")
            finished.wait(min(remaining, _POLL_INTERVAL))

        if failure:
            raise ShutdownError(f"hook execution failed: {failure[0]}") from failure[0]
        log.info("Shutdown hook completed: %s", hook.name)

    def _install_signal_handlers(self) -> None:
        wanted = [signal.SIGINT, signal.SIGTERM]
        usr1 = getattr(signal, "SIGUSR1", None)
        if usr1 is not None:
            wanted.append(usr1)
        for signum in wanted:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum: int, frame: Any) -> None:
        if signum == signal.SIGINT:
            if self.config.confirm_on_ctrl_c:
                now = time.monotonic()
                if now < self._force_quit_deadline:
                    log.error("Force quit initiated")
                    os._exit(1)
                self._force_quit_deadline = now + _FORCE_QUIT_WINDOW
                print(
                    "\n^C received. Shutting down gracefully... "
                    "(Press Ctrl+C again to force quit)"
                )
            self._spawn(self._shutdown_from_signal, "SIGINT received")
        elif signum == signal.SIGTERM:
            self._spawn(self._shutdown_from_signal, "SIGTERM received")
        elif signum == getattr(signal, "SIGUSR1", None):
            log.info("SIGUSR1 received - saving state checkpoint")
            self._spawn(self.save_checkpoint)

    @staticmethod
    def _spawn(target: Any, *args: Any) -> None:
        threading.Thread(target=target, args=args, daemon=True).start()

    def _shutdown_from_signal(self, reason: str) -> None:
        try:
            self.initiate_shutdown(reason)
        except ShutdownError as exc:
            log.warning("Shutdown after signal: %s", exc)