"""Tests for the background service scheduler."""

import threading
import time

import pytest

from webmon.errors import ServiceStateError
from webmon.service import BackgroundService, ServiceState


class Ticker(BackgroundService):
    """Counts the ticks of one periodic task."""

    def __init__(self, delay_ms=10, action=None):
        super().__init__("Ticker")
        self.delay_ms = delay_ms
        self.action = action
        self.ticks = 0
        self.stopped_calls = 0

    def started(self):
        self.schedule_with_fixed_delay(self.tick, 0, self.delay_ms)

    def stopped(self):
        self.stopped_calls += 1

    def tick(self):
        self.ticks += 1
        if self.action is not None:
            self.action()


def wait_until(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.005)
    return condition()


class TestLifecycle:
    """Tests for start and stop."""

    def test_start_stop(self):
        service = Ticker()
        assert service.state is ServiceState.CREATED
        service.start()
        try:
            assert service.is_running
            assert wait_until(lambda: service.ticks >= 3)
        finally:
            service.stop()
        service.join(1.0)
        assert service.state is ServiceState.STOPPED
        assert not service.thread.is_alive()
        assert service.stopped_calls == 1

    def test_failed_start_rolls_back(self):
        """Test a service whose started() hook fails can be started again."""
        attempts = []

        class Flaky(Ticker):
            def started(self):
                attempts.append(1)
                self.schedule_with_fixed_delay(self.tick, 0, self.delay_ms)
                if len(attempts) == 1:
                    raise RuntimeError("not ready")

        service = Flaky()
        with pytest.raises(RuntimeError):
            service.start()
        assert service.state is ServiceState.CREATED
        assert service.thread is None
        service.stop()
        assert service.stopped_calls == 0

        service.start()
        try:
            assert service.is_running
            assert wait_until(lambda: service.ticks >= 2)
        finally:
            service.stop()
        service.join(1.0)

    def test_double_start_raises(self):
        service = Ticker()
        service.start()
        try:
            with pytest.raises(ServiceStateError):
                service.start()
        finally:
            service.stop()

    def test_restart_after_stop_raises(self):
        service = Ticker()
        service.start()
        service.stop()
        with pytest.raises(ServiceStateError):
            service.start()

    def test_stop_is_idempotent(self):
        service = Ticker()
        service.stop()
        assert service.state is ServiceState.CREATED
        service.start()
        service.stop()
        service.stop()
        assert service.stopped_calls == 1

    def test_thread_is_named_daemon(self):
        service = Ticker()
        service.start()
        try:
            assert service.thread.name.startswith("webmon-Ticker-")
            assert service.thread.daemon
        finally:
            service.stop()

    def test_scheduling_after_start_raises(self):
        service = Ticker()
        service.start()
        try:
            with pytest.raises(ServiceStateError):
                service.execute(lambda: None)
        finally:
            service.stop()


class TestTasks:
    """Tests for task execution."""

    def test_failing_task_stays_scheduled(self):
        """Test a task raising on every run keeps being run."""

        def fail():
            raise RuntimeError("boom")

        service = Ticker(action=fail)
        service.start()
        try:
            assert wait_until(lambda: service.ticks >= 3)
        finally:
            service.stop()

    def test_stop_does_not_wait_for_running_task(self):
        """Test stop() returns while a task is still blocked."""
        entered = threading.Event()
        release = threading.Event()

        def block():
            entered.set()
            release.wait(5)

        service = Ticker(action=block)
        service.start()
        try:
            assert entered.wait(2)
            started = time.monotonic()
            service.stop()
            assert time.monotonic() - started < 1
            assert service.thread.is_alive()
        finally:
            release.set()
        service.join(2)
        assert not service.thread.is_alive()
        assert service.ticks == 1

    def test_execute_runs_once(self):
        calls = []

        class Once(BackgroundService):
            def started(self):
                self.execute(lambda: calls.append(1), name="once")

        service = Once("Once")
        service.start()
        service.join(2)
        # the scheduler thread exits once no task remains
        assert calls == [1]
        service.stop()
