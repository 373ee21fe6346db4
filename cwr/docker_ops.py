from __future__ import annotations

from typing import Any, Callable, Mapping, Sequence

import docker
from docker.errors import APIError, DockerException, NotFound

from . import compose
from .config import Credentials
from .db import log_event
from .workloads import EngineError, Workload, compose_run_key

LABEL_DIGEST = "cwr.digest"
LABEL_IMAGE = "cwr.image"
LABEL_SERVICE = "cwr.service"


def _matches_digest(image: Any, digest: str) -> bool:
    for ref in image.attrs.get("RepoDigests") or []:
        if ref.split("@", 1)[-1] == digest:
            return True
    return False


def _describe_create_error(e: DockerException, container_name: str | None) -> str:
    if isinstance(e, APIError) and e.status_code == 409 and container_name:
        return f"container name '{container_name}' is already used by a container cwr does not manage"
    return str(e)


class DockerWorkload:
    """A container created by DockerEngine. Queries go straight to the engine."""

    def __init__(self, engine: "DockerEngine", container_id: str, name: str, digest: str, run_key: str | None = None):
        self.engine = engine
        self.id = container_id
        self.name = name
        self.digest = digest
        self.run_key = run_key or digest

    def __repr__(self) -> str:
        return f"DockerWorkload(id={self.id[:12]!r}, name={self.name!r})"

    def _inspect(self) -> Any:
        try:
            return self.engine.client.containers.get(self.id)
        except DockerException as e:
            raise EngineError(f"inspect {self.id[:12]} failed: {e}") from e

    def is_running(self) -> bool:
        return self._inspect().status == "running"

    def image_identity(self) -> str:
        return self._inspect().attrs.get("Image", "")


class DockerEngine:
    """Engine driver backed by the local docker daemon."""

    def __init__(self, client: docker.DockerClient | None = None):
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise EngineError(
                    "Docker is not available. Start the docker daemon and try again."
                ) from e
        return self._client

    def docker_available(self) -> bool:
        try:
            self.client.ping()
            return True
        except (DockerException, EngineError):
            return False

    # -- images --

    def image_exists(self, digest: str) -> bool:
        try:
            return any(_matches_digest(img, digest) for img in self.client.images.list())
        except DockerException as e:
            raise EngineError(f"listing images failed: {e}") from e

    def pull_image(self, name: str, digest: str, credentials: Credentials | None = None) -> None:
        kwargs: dict[str, Any] = {}
        if credentials is not None and credentials.username and credentials.password:
            kwargs["auth_config"] = credentials.auth_config()
        try:
            self.client.images.pull(name, tag=digest, **kwargs)
        except DockerException as e:
            raise EngineError(f"pull {name}@{digest} failed: {e}") from e
        log_event("INFO", f"Pulled image {name}@{digest}", digest=digest)

    def remove_image(self, digest: str) -> None:
        try:
            for img in self.client.images.list():
                if _matches_digest(img, digest):
                    self.client.images.remove(img.id, force=True)
                    log_event("INFO", f"Removed image {img.id}", digest=digest)
        except NotFound:
            return
        except DockerException as e:
            raise EngineError(f"remove image {digest} failed: {e}") from e

    # -- containers --

    def _remove_leftovers(self, labels: list[str], skip: Callable[[Any], bool] | None = None) -> None:
        """Remove containers a previous instance created for the same workload."""
        try:
            leftovers = self.client.containers.list(all=True, filters={"label": labels})
        except DockerException as e:
            raise EngineError(f"listing containers failed: {e}") from e
        for c in leftovers:
            if skip is not None and skip(c):
                continue
            digest = (c.labels or {}).get(LABEL_DIGEST)
            try:
                self.remove_workload(c.id)
            except EngineError as e:
                log_event("WARN", f"Removing leftover container failed: {e}", workload=c.id, digest=digest)
                continue
            log_event("INFO", f"Removed leftover container {c.id[:12]}", workload=c.id, digest=digest)

    def create_workload(
        self,
        name: str,
        digest: str,
        args: Sequence[str],
        options: Mapping[str, Any],
        env: Sequence[str] = (),
        host_options: Mapping[str, Any] | None = None,
    ) -> Workload:
        """Create (but do not start) a container from the pinned image."""
        kwargs: dict[str, Any] = dict(options)
        labels = dict(kwargs.pop("labels", None) or {})
        labels.update({LABEL_DIGEST: digest, LABEL_IMAGE: name})

        host_options = host_options or {}
        if "Binds" in host_options:
            binds = host_options["Binds"]
            kwargs["volumes"] = [binds] if isinstance(binds, str) else list(binds)
        if "NetworkMode" in host_options:
            kwargs["network_mode"] = host_options["NetworkMode"]
        if "AutoRemove" in host_options:
            kwargs["auto_remove"] = host_options["AutoRemove"]

        # Compose services of the same image carry a service label and are handled there.
        self._remove_leftovers([f"{LABEL_IMAGE}={name}"], skip=lambda c: LABEL_SERVICE in (c.labels or {}))

        ref = f"{name}@{digest}"
        try:
            container = self.client.containers.create(
                ref,
                command=list(args) or None,
                environment=list(env),
                labels=labels,
                **kwargs,
            )
        except DockerException as e:
            reason = _describe_create_error(e, kwargs.get("name"))
            raise EngineError(f"create container from {ref} failed: {reason}") from e
        except TypeError as e:
            raise EngineError(f"create container from {ref} failed: {e}") from e

        log_event("INFO", f"Created container {container.id[:12]} from {ref}", workload=container.id, digest=digest)
        return DockerWorkload(self, container.id, name, digest)

    def create_compose_workloads(self, name: str, digest: str, lines: Sequence[str]) -> list[Workload]:
        """Create (but do not start) one container per compose service."""
        services = compose.parse(lines)
        created: list[Workload] = []
        try:
            for svc in services:
                self._remove_leftovers([f"{LABEL_IMAGE}={name}", f"{LABEL_SERVICE}={svc.name}"])
                container_name = svc.container_name or svc.name
                try:
                    container = self.client.containers.create(
                        svc.image,
                        name=container_name,
                        command=svc.command,
                        environment=svc.environment,
                        ports=svc.docker_ports() or None,
                        labels={LABEL_DIGEST: digest, LABEL_IMAGE: name, LABEL_SERVICE: svc.name},
                    )
                except DockerException as e:
                    raise EngineError(
                        f"create compose containers for {name} failed: {_describe_create_error(e, container_name)}"
                    ) from e
                log_event(
                    "INFO",
                    f"Created container {container.id[:12]} for service '{svc.name}'",
                    workload=container.id,
                    digest=digest,
                )
                created.append(DockerWorkload(self, container.id, svc.name, digest, compose_run_key(digest, svc.name)))
        except EngineError:
            for w in created:
                try:
                    self.remove_workload(w.id)
                except EngineError as cleanup_err:
                    log_event("WARN", f"Cleanup after failed compose create: {cleanup_err}", workload=w.id)
            raise
        return created

    def start_workload(self, workload_id: str) -> None:
        try:
            self.client.containers.get(workload_id).start()
        except DockerException as e:
            raise EngineError(f"start {workload_id[:12]} failed: {e}") from e

    def stop_workload(self, workload_id: str) -> None:
        try:
            self.client.containers.get(workload_id).stop()
        except NotFound:
            return
        except DockerException as e:
            raise EngineError(f"stop {workload_id[:12]} failed: {e}") from e

    def remove_workload(self, workload_id: str) -> None:
        try:
            self.client.containers.get(workload_id).remove(force=True)
        except NotFound:
            return
        except DockerException as e:
            raise EngineError(f"remove {workload_id[:12]} failed: {e}") from e
