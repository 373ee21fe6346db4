from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Condition, Lock
from typing import TYPE_CHECKING, Iterator

from .config import DesiredConfig
from .workloads import WorkloadSet

if TYPE_CHECKING:
    from .watch import WatchTask

UNINITIALIZED = "uninitialized"
RECONCILING = "reconciling"
STEADY = "steady"
FAILED = "failed"
CLOSED = "closed"


class RWLock:
    """Many readers or one writer. Writers are preferred once waiting."""

    def __init__(self) -> None:
        self._cond = Condition(Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class ReconcilerState:
    """Everything the reconciler mutates; guarded by Reconciler.lock."""

    phase: str = UNINITIALIZED
    config: DesiredConfig | None = None
    workloads: WorkloadSet = field(default_factory=WorkloadSet)
    watchers: dict[str, "WatchTask"] = field(default_factory=dict)  # workload id -> task
    last_error: str | None = None

    @property
    def run_once(self) -> bool:
        return bool(self.config and self.config.run_once)

    @property
    def download_only(self) -> bool:
        return bool(self.config and self.config.download_only)
