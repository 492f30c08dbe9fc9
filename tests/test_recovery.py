import os
import time
from datetime import datetime, timedelta

import pytest

from pubdatahub.shutdown.recovery import (
    RecoveryConfig,
    RecoveryError,
    RecoveryManager,
    RecoveryType,
    default_recovery_config,
)
from pubdatahub.shutdown.state import ApplicationInfo, ApplicationState, StateManager


class FakeHandler:
    def __init__(self, name, priority, order=None, error=None, delay=0.0, invalid=False, timeout=5.0):
        self.name = name
        self.priority = priority
        self.timeout = timeout
        self.order = order if order is not None else []
        self.error = error
        self.delay = delay
        self.invalid = invalid

    def recover(self, cancel_event, state_manager):
        if self.delay:
            time.sleep(self.delay)
        self.order.append(self.name)
        if self.error:
            raise self.error

    def validate(self):
        if self.invalid:
            raise RuntimeError("bad")


@pytest.fixture
def state_manager(tmp_path):
    return StateManager(tmp_path, 3)


def make_manager(state_manager):
    return RecoveryManager(state_manager, RecoveryConfig(recovery_timeout=5.0))


def test_default_config():
    config = default_recovery_config()
    assert config.recovery_timeout == 60.0
    assert config.max_recovery_attempts == 3
    assert config.auto_resume_jobs and config.verify_database_on_start


def test_register_errors(state_manager):
    manager = make_manager(state_manager)
    handler = FakeHandler("a", 1)
    manager.register_recovery_handler("a", handler)
    with pytest.raises(ValueError):
        manager.register_recovery_handler("a", handler)
    with pytest.raises(ValueError):
        manager.register_recovery_handler("", handler)
    with pytest.raises(ValueError):
        manager.register_recovery_handler("none", None)


def test_handlers_run_by_priority(state_manager):
    manager = make_manager(state_manager)
    order = []
    for name, priority in [("c", 30), ("a", 5), ("b", 15)]:
        manager.register_recovery_handler(name, FakeHandler(name, priority, order))
    manager.perform_recovery()
    status = manager.get_recovery_status()
    assert order == ["a", "b", "c"]
    assert status.completed_handlers == ["a", "b", "c"]
    assert status.pending_handlers == []
    assert status.in_progress is False


def test_missing_state_is_crash(state_manager):
    manager = make_manager(state_manager)
    manager.perform_recovery()
    status = manager.get_recovery_status()
    assert status.recovery_type is RecoveryType.CRASH
    assert status.state_found is False


def test_clean_shutdown_detected(state_manager):
    state_manager.save_application_state(
        ApplicationState(application=ApplicationInfo(clean_shutdown=True), timestamp=datetime.now())
    )
    manager = make_manager(state_manager)
    manager.perform_recovery()
    status = manager.get_recovery_status()
    assert status.recovery_type is RecoveryType.CLEAN
    assert status.state_found is True


def test_unclean_shutdown_is_crash(state_manager):
    state_manager.save_application_state(
        ApplicationState(
            application=ApplicationInfo(pid=os.getpid() + 1),
            timestamp=datetime.now() - timedelta(hours=1),
        )
    )
    manager = make_manager(state_manager)
    manager.perform_recovery()
    assert manager.get_recovery_status().recovery_type is RecoveryType.CRASH


@pytest.mark.parametrize(
    "state",
    [
        ApplicationState(application=ApplicationInfo(pid=os.getpid()), timestamp=datetime.now() - timedelta(hours=1)),
        ApplicationState(application=ApplicationInfo(pid=os.getpid() + 1), timestamp=datetime.now() + timedelta(days=1)),
        ApplicationState(application=ApplicationInfo(pid=os.getpid() + 1), timestamp=None),
    ],
)
def test_corruption_indicators(state_manager, state):
    state_manager.save_application_state(state)
    manager = make_manager(state_manager)
    manager.perform_recovery()
    assert manager.get_recovery_status().recovery_type is RecoveryType.CORRUPTION


def test_corrupted_component_file(state_manager):
    state_manager.save_application_state(
        ApplicationState(
            application=ApplicationInfo(pid=os.getpid() + 1),
            timestamp=datetime.now() - timedelta(hours=1),
        )
    )
    (state_manager.state_path / "broken.json").write_text("{invalid json")
    manager = make_manager(state_manager)
    manager.perform_recovery()
    assert manager.get_recovery_status().recovery_type is RecoveryType.CORRUPTION


def test_handler_failure_recorded_and_continues(state_manager):
    manager = make_manager(state_manager)
    order = []
    manager.register_recovery_handler("bad", FakeHandler("bad", 1, order, error=RuntimeError("boom")))
    manager.register_recovery_handler("good", FakeHandler("good", 2, order))
    manager.perform_recovery()
    status = manager.get_recovery_status()
    assert order == ["bad", "good"]
    assert len(status.errors) == 1
    assert "handler bad failed" in str(status.errors[0])
    assert "boom" in str(status.errors[0])
    assert manager.create_recovery_report().success is False


def test_handler_timeout(state_manager):
    manager = make_manager(state_manager)
    manager.register_recovery_handler("slow", FakeHandler("slow", 1, delay=0.5, timeout=0.05))
    start = time.monotonic()
    manager.perform_recovery()
    assert time.monotonic() - start < 0.4
    errors = manager.get_recovery_status().errors
    assert len(errors) == 1
    assert "timed out" in str(errors[0])


def test_validation_failure(state_manager):
    manager = make_manager(state_manager)
    manager.register_recovery_handler("v", FakeHandler("v", 1, invalid=True))
    with pytest.raises(RecoveryError, match="recovery validation failed"):
        manager.perform_recovery()
    assert manager.get_recovery_status().in_progress is True
    with pytest.raises(RecoveryError, match="already in progress"):
        manager.perform_recovery()


def test_validate_recovery_names_handler(state_manager):
    manager = make_manager(state_manager)
    manager.register_recovery_handler("checker", FakeHandler("checker", 1, invalid=True))
    with pytest.raises(RecoveryError, match="checker"):
        manager.validate_recovery()


def test_recover_from_missing_backup(state_manager):
    manager = make_manager(state_manager)
    with pytest.raises(RecoveryError, match="failed to restore from backup"):
        manager.recover_from_backup("nope")


def test_recover_from_backup(state_manager):
    state_manager.save_application_state(
        ApplicationState(application=ApplicationInfo(clean_shutdown=True), timestamp=datetime.now())
    )
    name = state_manager.backup_state()
    state_manager.clear_state("application")
    manager = make_manager(state_manager)
    manager.recover_from_backup(name)
    status = manager.get_recovery_status()
    assert status.recovery_type is RecoveryType.CLEAN
    assert "application" in state_manager.list_states()


def test_report_after_success(state_manager):
    manager = make_manager(state_manager)
    manager.register_recovery_handler("a", FakeHandler("a", 1))
    manager.perform_recovery()
    report = manager.create_recovery_report()
    assert report.success is True
    assert report.completed_handlers == ["a"]
    assert report.duration >= timedelta(0)
    assert report.recovery_type is RecoveryType.CRASH