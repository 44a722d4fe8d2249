import threading
import time

import pytest

from streamlink_daemon.worker import Policy, Priority, Worker


class Looper(Worker):
    def __init__(self, index=0):
        super().__init__(index)
        self.loops = 0
        self.entered = threading.Event()

    def run_loop(self):
        self.entered.set()
        while self.running():
            self.loops += 1
            time.sleep(0.001)


class OneShot(Worker):
    def __init__(self):
        super().__init__(5, Priority.HIGH, Policy.NORMAL)
        self.calls = 0

    def run_loop(self):
        self.calls += 1


def test_join_times_out_while_running():
    worker = Looper()
    Worker.start(worker)
    try:
        assert Worker.join(worker, 0.05) is False
        assert worker.done is False
    finally:
        Worker.stop(worker)
        assert Worker.join(worker, 2.0) is True


def test_loop_that_returns_finishes_without_stop():
    worker = OneShot()
    Worker.start(worker)
    assert Worker.join(worker, 2.0) is True
    assert worker.calls == 1
    assert worker.done is True


def test_join_before_start_raises():
    worker = Looper()
    with pytest.raises(RuntimeError):
        Worker.join(worker, 0.1)


def test_start_twice_raises():
    worker = OneShot()
    Worker.start(worker)
    try:
        with pytest.raises(RuntimeError):
            Worker.start(worker)
    finally:
        Worker.join(worker, 2.0)


def test_stop_after_done_keeps_done():
    worker = OneShot()
    Worker.start(worker)
    assert Worker.join(worker, 2.0) is True
    Worker.stop(worker)
    assert worker.done is True
    assert Worker.running(worker) is False


def test_default_settings():
    worker = Looper(4)
    assert worker.index == 4
    assert worker.priority is Priority.MIDDLE
    assert worker.policy is Policy.REALTIME
    assert Worker.running(worker) is False
    assert worker.done is False


def test_explicit_settings():
    worker = OneShot()
    assert worker.priority is Priority.HIGH
    assert worker.policy is Policy.NORMAL
    assert worker.index == 5
    assert Worker.running(worker) is False