from __future__ import annotations

from . import db
from .config import ComposeSpec, ConfigError, DesiredConfig, RunSpec, has_changed, validate
from .history import HistoryError, RunHistory
from .runtime import CLOSED, FAILED, RECONCILING, STEADY, ReconcilerState, RWLock
from .settings import settings
from .watch import StartPolicy, WatchTask
from .workloads import EngineDriver, EngineError, WorkloadSet, WorkloadStatus


class ReconcileError(RuntimeError):
    """A reconciliation pass could not be applied."""


class ReconcilerClosed(RuntimeError):
    pass


class Reconciler:
    """Converges the host toward one DesiredConfig.

    configure() runs a reconciliation pass when the config changed:
    teardown -> ensure image -> create workloads -> arm one watch task per
    workload. The watch tasks then keep the workloads running per policy.
    """

    def __init__(
        self,
        engine: EngineDriver,
        history: RunHistory,
        poll_interval_s: float | None = None,
        prune_old_images: bool | None = None,
    ):
        self.engine = engine
        self.history = history
        self.poll_interval_s = settings.poll_interval_s if poll_interval_s is None else poll_interval_s
        self.prune_old_images = settings.prune_old_images if prune_old_images is None else prune_old_images
        self.state = ReconcilerState()
        self.lock = RWLock()

    # -- lifecycle hooks --

    def configure(self, desired: DesiredConfig) -> bool:
        """Apply *desired*. Returns False when it was already applied.

        Raises ConfigError before touching the engine, ReconcileError when the
        pass fails (no workloads are left in that case).
        """
        validate(desired)
        with self.lock.write():
            if self.state.phase == CLOSED:
                raise ReconcilerClosed("reconciler is closed")
            if not has_changed(self.state.config, desired):
                db.log_event("DEBUG", "Configuration unchanged; nothing to do", digest=desired.digest)
                return False

            previous = self.state.config
            self.state.phase = RECONCILING
            self.state.last_error = None
            db.log_event("INFO", f"Reconciling to {desired.image_ref}", digest=desired.digest)

            self._teardown()
            self.state.config = None
            try:
                self._ensure_image(desired)
                if previous is not None and previous.digest != desired.digest and self.prune_old_images:
                    self._prune(previous.digest)
                if not desired.download_only:
                    self.state.workloads = self._create(desired)
                    self._arm(desired)
            except (EngineError, ConfigError) as e:
                self.state.phase = FAILED
                self.state.last_error = str(e)
                db.log_event("ERROR", f"Reconciliation failed: {e}", digest=desired.digest)
                raise ReconcileError(str(e)) from e

            self.state.config = desired
            self.state.phase = STEADY
            db.log_event(
                "INFO",
                f"Reconciled: {len(self.state.workloads)} workload(s)"
                + (" (download only)" if desired.download_only else ""),
                digest=desired.digest,
            )
            return True

    def status(self) -> dict[str, WorkloadStatus]:
        """Per-workload readings keyed by container id."""
        with self.lock.read():
            out: dict[str, WorkloadStatus] = {}
            for w in self.state.workloads:
                try:
                    out[w.id] = self.state.workloads.status_of(w)
                except EngineError as e:
                    db.log_event("ERROR", f"Status query failed: {e}", workload=w.id, digest=w.digest)
            return out

    def describe(self) -> dict:
        with self.lock.read():
            conf = self.state.config
            return {
                "phase": self.state.phase,
                "image": conf.image_ref if conf else None,
                "kind": conf.workload.kind if conf else None,
                "run_once": self.state.run_once,
                "download_only": self.state.download_only,
                "last_error": self.state.last_error,
            }

    def is_ready(self) -> bool:
        with self.lock.read():
            if self.state.phase != STEADY or self.state.config is None:
                return False
            if self.state.download_only:
                return True
            for w in self.state.workloads:
                try:
                    if w.is_running():
                        continue
                    if self.state.run_once and self.history.has_run(w.run_key):
                        continue
                except (EngineError, HistoryError) as e:
                    db.log_event("ERROR", f"Readiness check failed: {e}", workload=w.id)
                return False
            return bool(self.state.workloads)

    def close(self) -> None:
        """Stop watch tasks and workloads. Safe to call more than once."""
        with self.lock.write():
            if self.state.phase == CLOSED:
                return
            self.state.phase = CLOSED
            tasks = list(self.state.watchers.values())
            for task in tasks:
                task.stop()
            # All tasks must have exited before the containers are stopped.
            for task in tasks:
                task.join()
            self.state.watchers.clear()
            for w, e in self.state.workloads.stop_all(self.engine):
                db.log_event("ERROR", f"Stop on close failed: {e}", workload=w.id, digest=w.digest)
            db.log_event("INFO", "Reconciler closed")

    def watch_tasks(self) -> list[WatchTask]:
        with self.lock.read():
            return list(self.state.watchers.values())

    # -- reconciliation steps --

    def _teardown(self) -> None:
        tasks = list(self.state.watchers.values())
        for task in tasks:
            task.stop()
        for task in tasks:
            task.join()
        self.state.watchers.clear()

        old = self.state.workloads
        self.state.workloads = WorkloadSet()
        for w, e in old.stop_all(self.engine):
            db.log_event("WARN", f"Teardown stop failed: {e}", workload=w.id, digest=w.digest)
        for w, e in old.remove_all(self.engine):
            db.log_event("WARN", f"Teardown remove failed: {e}", workload=w.id, digest=w.digest)

    def _ensure_image(self, desired: DesiredConfig) -> None:
        if self.engine.image_exists(desired.digest):
            return
        db.log_event("INFO", f"Image {desired.image_ref} not present. Pulling...", digest=desired.digest)
        self.engine.pull_image(desired.image_name, desired.digest, credentials=desired.credentials)

    def _prune(self, old_digest: str) -> None:
        try:
            self.engine.remove_image(old_digest)
        except EngineError as e:
            db.log_event("WARN", f"Removing old image failed: {e}", digest=old_digest)

    def _create(self, desired: DesiredConfig) -> WorkloadSet:
        spec = desired.workload
        if isinstance(spec, ComposeSpec):
            return WorkloadSet(self.engine.create_compose_workloads(desired.image_name, desired.digest, spec.lines))
        if isinstance(spec, RunSpec):
            return WorkloadSet(
                [
                    self.engine.create_workload(
                        desired.image_name,
                        desired.digest,
                        spec.args,
                        spec.options,
                        env=spec.env,
                        host_options=spec.host_options,
                    )
                ]
            )
        raise ConfigError(f"unknown workload spec {type(spec).__name__}")

    def _arm(self, desired: DesiredConfig) -> None:
        policy = StartPolicy(run_once=desired.run_once, download_only=desired.download_only)
        for w in self.state.workloads:
            task = WatchTask(w, self.engine, self.history, policy, interval_s=self.poll_interval_s)
            self.state.watchers[w.id] = task
            task.start()
