from __future__ import annotations

from dataclasses import dataclass
from threading import Event, Thread

from . import db
from .history import HistoryError, RunHistory
from .workloads import EngineDriver, EngineError, Workload


@dataclass(frozen=True)
class StartPolicy:
    run_once: bool = False
    download_only: bool = False


class WatchTask:
    """Polls one workload and starts it whenever policy allows.

    One task per workload, owned by the reconciler. The task never touches
    reconciler state; it only sees its workload, the engine and the history.
    """

    def __init__(
        self,
        workload: Workload,
        engine: EngineDriver,
        history: RunHistory,
        policy: StartPolicy,
        interval_s: float = 10,
    ):
        self.workload = workload
        self.engine = engine
        self.history = history
        self.policy = policy
        self.interval_s = max(0.01, float(interval_s))
        self._stop = Event()
        self._thr: Thread | None = None

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self._loop, name=f"watch-{self.workload.id[:12]}", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thr is not None:
            self._thr.join(timeout)

    def is_alive(self) -> bool:
        return bool(self._thr and self._thr.is_alive())

    def _log(self, level: str, message: str) -> None:
        db.log_event(level, message, workload=self.workload.id, digest=self.workload.digest)

    def _loop(self) -> None:
        self._log("INFO", "Watch task started")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                self._log("ERROR", f"Watch tick failed: {type(e).__name__}: {e}")
            self._stop.wait(self.interval_s)
        self._log("INFO", "Watch task stopped")

    def should_run(self) -> bool:
        if self.policy.download_only:
            return False
        if not self.policy.run_once:
            return True
        try:
            return not self.history.has_run(self.workload.run_key)
        except HistoryError as e:
            # Unknown history blocks the start; a spurious second run is worse.
            self._log("ERROR", f"Run-history lookup failed, not starting: {e}")
            return False

    def tick(self) -> bool:
        """One poll. Returns True when the workload was started."""
        try:
            running = self.workload.is_running()
        except EngineError as e:
            self._log("ERROR", str(e))
            return False
        if running or self._stop.is_set():
            return False

        if not self.should_run() or self._stop.is_set():
            return False

        try:
            self.engine.start_workload(self.workload.id)
        except EngineError as e:
            self._log("ERROR", f"{e}; retrying in {self.interval_s:g}s")
            return False
        self._log("INFO", f"Started workload '{self.workload.name}'")

        try:
            self.history.mark_run(self.workload.run_key)
        except HistoryError as e:
            self._log("WARN", f"Started but could not record run: {e}")
        return True
