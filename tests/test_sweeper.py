"""Tests for the background expiry sweeper."""

import threading

from avenida_stickers.sweeper import ExpirySweeper


def _result(deleted=0):
    return {"deleted": deleted, "errors": [], "enabled": True, "message": ""}


class TestRunOnce:
    def test_returns_sweep_result(self):
        sweeper = ExpirySweeper(lambda: _result(3))

        assert sweeper.run_once()["deleted"] == 3
        assert not sweeper.is_sweeping

    def test_skips_while_another_sweep_runs(self):
        started = threading.Event()
        release = threading.Event()

        def slow_sweep():
            started.set()
            release.wait(5)
            return _result(1)

        sweeper = ExpirySweeper(slow_sweep)
        worker = threading.Thread(target=sweeper.run_once)
        worker.start()
        assert started.wait(5)

        assert sweeper.is_sweeping
        assert sweeper.run_once() is None

        release.set()
        worker.join(5)
        assert not sweeper.is_sweeping

    def test_lock_is_released_after_failure(self):
        calls = []

        def failing_sweep():
            calls.append(1)
            raise RuntimeError("boom")

        sweeper = ExpirySweeper(failing_sweep)

        sweeper._scheduled_run()
        sweeper._scheduled_run()

        assert len(calls) == 2
        assert not sweeper.is_sweeping


class TestSchedule:
    def test_runs_immediately_then_on_interval(self):
        calls = []
        ran_twice = threading.Event()

        def sweep():
            calls.append(1)
            if len(calls) >= 2:
                ran_twice.set()
            return _result()

        sweeper = ExpirySweeper(sweep, interval_seconds=0.01)
        sweeper.start()
        try:
            assert ran_twice.wait(5)
            assert sweeper.is_started
        finally:
            sweeper.stop()

        assert not sweeper.is_started

    def test_start_twice_keeps_one_thread(self):
        release = threading.Event()
        sweeper = ExpirySweeper(lambda: release.wait(5) and _result(), interval_seconds=60)
        sweeper.start()
        first_thread = sweeper._thread
        try:
            sweeper.start()
            assert sweeper._thread is first_thread
        finally:
            release.set()
            sweeper.stop()

    def test_stop_without_start(self):
        ExpirySweeper(_result).stop()

    def test_failures_do_not_stop_the_schedule(self):
        calls = []
        ran_again = threading.Event()

        def sweep():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database unavailable")
            ran_again.set()
            return _result()

        sweeper = ExpirySweeper(sweep, interval_seconds=0.01)
        sweeper.start()
        try:
            assert ran_again.wait(5)
        finally:
            sweeper.stop()
