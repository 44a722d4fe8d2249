"""Background worker threads with a cooperative stop request."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from enum import Enum, IntEnum
from typing import Optional


class Priority(IntEnum):
    HIGH = 0
    MIDDLE = 1
    LOW = 2


class Policy(IntEnum):
    REALTIME = 0
    NORMAL = 1


class _State(Enum):
    INITIALIZED = 0
    RUNNING = 1
    STOPPED = 2
    DONE = 3


class Worker(ABC):
    """A thread running run_loop until it returns; run_loop polls running()."""

    def __init__(
        self,
        index: int = 0,
        priority: Priority = Priority.MIDDLE,
        policy: Policy = Policy.REALTIME,
    ) -> None:
        self.index = index
        self.priority = priority
        self.policy = policy
        self._cond = threading.Condition()
        self._state = _State.INITIALIZED
        self._thread: Optional[threading.Thread] = None

    @abstractmethod
    def run_loop(self) -> None:
        """Do the worker's job, returning once running() turns false."""

    def start(self) -> None:
        """Start the worker thread."""
        with self._cond:
            if self._thread is not None:
                raise RuntimeError("worker already started")
            self._state = _State.RUNNING
            self._thread = threading.Thread(
                target=self._entry,
                name=f"{type(self).__name__}-{self.index}",
                daemon=True,
            )
            self._thread.start()

    def stop(self) -> None:
        """Ask the worker to finish."""
        with self._cond:
            if self._state is not _State.DONE:
                self._state = _State.STOPPED

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for run_loop to return; True if it has."""
        with self._cond:
            if self._thread is None:
                raise RuntimeError("worker was never started")
            return self._cond.wait_for(lambda: self._state is _State.DONE, timeout)

    def running(self) -> bool:
        """True while the worker has not been asked to stop."""
        with self._cond:
            return self._state is _State.RUNNING

    @property
    def done(self) -> bool:
        with self._cond:
            return self._state is _State.DONE

    def _entry(self) -> None:
        try:
            self.run_loop()
        finally:
            with self._cond:
                self._state = _State.DONE
                self._cond.notify_all()