import threading
import time

import pytest

from pubdatahub.shutdown.manager import (
    ShutdownError,
    ShutdownHook,
    ShutdownManager,
    default_manager_config,
)


class MockHook(ShutdownHook):
    def __init__(self, name, priority, delay=0.0, error=None, timeout=5.0):
        self.name = name
        self.priority = priority
        self.delay = delay
        self.error = error
        self.timeout = timeout
        self._lock = threading.Lock()
        self.executed = False

    def shutdown(self, cancel_event):
        with self._lock:
            if self.delay:
                time.sleep(self.delay)
            self.executed = True
            if self.error:
                raise self.error

    def was_executed(self):
        with self._lock:
            return self.executed


class OrderHook(ShutdownHook):
    timeout = 5.0

    def __init__(self, name, priority, order):
        self.name = name
        self.priority = priority
        self.order = order

    def shutdown(self, cancel_event):
        self.order.append(self.name)


class Checkpointer(MockHook):
    def __init__(self, name, fail=False):
        super().__init__(name, 1)
        self.fail = fail
        self.checkpoints = 0

    def save_checkpoint(self):
        if self.fail:
            raise RuntimeError("disk full")
        self.checkpoints += 1


def make_manager(**overrides):
    config = default_manager_config()
    config.auto_register_signals = False
    for key, value in overrides.items():
        setattr(config, key, value)
    return ShutdownManager(config)


def test_register_hook():
    manager = make_manager()
    hook = MockHook("test", 10)
    manager.register_shutdown_hook("test", hook)
    with pytest.raises(ValueError, match="already registered"):
        manager.register_shutdown_hook("test", hook)
    with pytest.raises(ValueError, match="empty"):
        manager.register_shutdown_hook("", hook)
    with pytest.raises(ValueError, match="cannot be None"):
        manager.register_shutdown_hook("nil", None)


def test_initiate_shutdown():
    manager = make_manager(graceful_timeout=1.0)
    hook1 = MockHook("high-priority", 1)
    hook2 = MockHook("low-priority", 10)
    manager.register_shutdown_hook("hook1", hook1)
    manager.register_shutdown_hook("hook2", hook2)

    manager.initiate_shutdown("test shutdown")

    assert hook1.was_executed()
    assert hook2.was_executed()
    status = manager.get_shutdown_status()
    assert status.in_progress is True
    assert status.reason == "test shutdown"
    assert len(status.completed_hooks) == 2
    assert status.pending_hooks == []


def test_hook_priority():
    manager = make_manager()
    order = []
    manager.register_shutdown_hook("hook1", OrderHook("priority-5", 5, order))
    manager.register_shutdown_hook("hook2", OrderHook("priority-1", 1, order))
    manager.register_shutdown_hook("hook3", OrderHook("priority-3", 3, order))

    manager.initiate_shutdown("priority test")

    assert order == ["priority-1", "priority-3", "priority-5"]


def test_hook_timeout():
    manager = make_manager(graceful_timeout=0.1)
    manager.register_shutdown_hook("slow", MockHook("slow", 1, delay=0.2))

    start = time.monotonic()
    manager.initiate_shutdown("timeout test")
    duration = time.monotonic() - start

    assert duration < 0.15
    status = manager.get_shutdown_status()
    assert len(status.errors) == 1
    assert "timed out" in str(status.errors[0])


def test_hook_error_recorded():
    manager = make_manager()
    manager.register_shutdown_hook("bad", MockHook("bad", 1, error=RuntimeError("broken")))
    manager.register_shutdown_hook("good", MockHook("good", 2))
    manager.initiate_shutdown("errors")
    status = manager.get_shutdown_status()
    assert status.completed_hooks == ["bad", "good"]
    assert len(status.errors) == 1
    assert "hook bad failed" in str(status.errors[0])
    assert "broken" in str(status.errors[0])


def test_is_shutting_down():
    manager = make_manager()
    assert manager.is_shutting_down() is False
    manager.register_shutdown_hook("slow", MockHook("slow", 1, delay=0.1))

    worker = threading.Thread(target=manager.initiate_shutdown, args=("test",))
    worker.start()
    time.sleep(0.02)
    assert manager.is_shutting_down() is True
    worker.join(1.0)
    assert manager.get_shutdown_status().completed_hooks == ["slow"]


def test_second_shutdown_rejected():
    manager = make_manager()
    manager.initiate_shutdown("first")
    with pytest.raises(ShutdownError, match="already in progress"):
        manager.initiate_shutdown("second")


def test_force_shutdown_stops_after_current_hook():
    manager = make_manager()
    first = MockHook("first", 1)
    second = MockHook("second", 2)
    manager.register_shutdown_hook("first", first)
    manager.register_shutdown_hook("second", second)
    manager.force_shutdown()
    with pytest.raises(ShutdownError, match="shutdown forced"):
        manager.initiate_shutdown("forced")
    assert first.was_executed()
    assert not second.was_executed()


def test_save_checkpoint_only_checkpoint_hooks():
    manager = make_manager()
    good = Checkpointer("good")
    manager.register_shutdown_hook("good", good)
    manager.register_shutdown_hook("bad", Checkpointer("bad", fail=True))
    manager.register_shutdown_hook("plain", MockHook("plain", 1))
    assert manager.save_checkpoint() == ["good"]
    assert good.checkpoints == 1


def test_status_copy_is_independent():
    manager = make_manager()
    manager.register_shutdown_hook("a", MockHook("a", 1))
    manager.initiate_shutdown("copy")
    status = manager.get_shutdown_status()
    status.completed_hooks.clear()
    assert manager.get_shutdown_status().completed_hooks == ["a"]


def test_start_stop():
    manager = make_manager()
    manager.start()
    manager.stop()
    manager.register_shutdown_hook("slow", MockHook("slow", 1, delay=0.2))
    manager.initiate_shutdown("after stop")
    assert len(manager.get_shutdown_status().errors) == 1