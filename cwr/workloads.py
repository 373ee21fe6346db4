"""Workload handles and the engine capability set the reconciler relies on."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator, Mapping, Protocol, Sequence

from .config import Credentials


class EngineError(RuntimeError):
    """An image or container operation failed in the engine."""


class Workload(Protocol):
    id: str
    name: str
    digest: str
    run_key: str

    def is_running(self) -> bool: ...

    def image_identity(self) -> str: ...


class EngineDriver(Protocol):
    def image_exists(self, digest: str) -> bool: ...

    def pull_image(self, name: str, digest: str, credentials: Credentials | None = None) -> None: ...

    def remove_image(self, digest: str) -> None: ...

    def create_workload(
        self,
        name: str,
        digest: str,
        args: Sequence[str],
        options: Mapping[str, Any],
        env: Sequence[str] = (),
        host_options: Mapping[str, Any] | None = None,
    ) -> Workload: ...

    def create_compose_workloads(self, name: str, digest: str, lines: Sequence[str]) -> list[Workload]: ...

    def start_workload(self, workload_id: str) -> None: ...

    def stop_workload(self, workload_id: str) -> None: ...

    def remove_workload(self, workload_id: str) -> None: ...


def compose_run_key(digest: str, service: str) -> str:
    """Run-history key for one service of a compose workload."""
    return f"{digest}#{service}"


@dataclass(frozen=True)
class WorkloadStatus:
    digest: str
    image_id: str
    container_id: str
    running: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "repoDigest": self.digest,
            "imageId": self.image_id,
            "containerId": self.container_id,
            "isRunning": self.running,
        }


class WorkloadSet:
    """The containers created by one reconciliation pass."""

    def __init__(self, workloads: Sequence[Workload] = ()):
        self._workloads = list(workloads)

    def __iter__(self) -> Iterator[Workload]:
        return iter(self._workloads)

    def __len__(self) -> int:
        return len(self._workloads)

    def status_of(self, w: Workload) -> WorkloadStatus:
        image_id = w.image_identity()
        if not image_id:
            raise EngineError(f"container {w.id} reports an empty image id")
        return WorkloadStatus(digest=w.digest, image_id=image_id, container_id=w.id, running=w.is_running())

    def stop_all(self, engine: EngineDriver) -> list[tuple[Workload, Exception]]:
        """Stop every workload; returns the failures instead of raising."""
        failed: list[tuple[Workload, Exception]] = []
        for w in self._workloads:
            try:
                engine.stop_workload(w.id)
            except EngineError as e:
                failed.append((w, e))
        return failed

    def remove_all(self, engine: EngineDriver) -> list[tuple[Workload, Exception]]:
        failed: list[tuple[Workload, Exception]] = []
        for w in self._workloads:
            try:
                engine.remove_workload(w.id)
            except EngineError as e:
                failed.append((w, e))
        return failed
