import os
import sys
import threading
import time

import pytest

# Ensure project root is importable (so `import main` works without installing)
_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from cwr import compose, db  # noqa: E402
from cwr.settings import Settings  # noqa: E402
from cwr.workloads import EngineError, compose_run_key  # noqa: E402

DIGEST = "sha256:" + "a" * 64
DIGEST_2 = "sha256:" + "b" * 64
IMAGE = "ghcr.io/acme/worker"

COMPOSE_LINES = [
    "services:",
    "  web:",
    f"    image: {IMAGE}@{DIGEST}",
    "    ports:",
    '      - "8080:80"',
    "    environment:",
    "      - MODE=web",
    "  jobs:",
    f"    image: {IMAGE}@{DIGEST}",
    "    environment:",
    "      MODE: jobs",
]


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite event log."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "events.db")))
    db.init_db()
    yield


@pytest.fixture
def data_dir(tmp_path):
    d = tmp_path / "data"
    d.mkdir()
    return str(d)


def wait_for(cond, timeout=3.0, interval=0.01):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if cond():
            return True
        time.sleep(interval)
    return cond()


class FakeWorkload:
    def __init__(self, engine, container_id, name, digest, run_key=None):
        self.engine = engine
        self.id = container_id
        self.name = name
        self.digest = digest
        self.run_key = run_key or digest

    def is_running(self):
        self.engine._record("inspect", self.id)
        with self.engine.lock:
            c = self.engine.containers.get(self.id)
        if c is None:
            raise EngineError(f"no such container {self.id}")
        return c["running"]

    def image_identity(self):
        with self.engine.lock:
            c = self.engine.containers.get(self.id)
        if c is None:
            raise EngineError(f"no such container {self.id}")
        return c["image_id"]


class FakeEngine:
    """In-memory engine driver. Ops listed in `fail` raise EngineError."""

    def __init__(self, images=(), fail=()):
        self.lock = threading.Lock()
        self.images = set(images)
        self.containers = {}
        self.calls = []
        self.fail = set(fail)
        self._seq = 0

    def _record(self, op, *args):
        with self.lock:
            self.calls.append((op,) + args)
        if op in self.fail:
            raise EngineError(f"{op} failed")

    def count(self, op):
        with self.lock:
            return sum(1 for c in self.calls if c[0] == op)

    def ops(self):
        with self.lock:
            return [c[0] for c in self.calls]

    def _new_container(self, name, digest, run_key=None, image=None, service=None):
        with self.lock:
            if service is not None and any(c["name"] == name for c in self.containers.values()):
                raise EngineError(f"container name '{name}' is already in use")
            self._seq += 1
            cid = f"c{self._seq:04d}"
            self.containers[cid] = {
                "running": False,
                "image_id": f"img-{digest[-6:]}",
                "name": name,
                "image": image or name,
                "service": service,
            }
        return FakeWorkload(self, cid, name, digest, run_key)

    def _remove_leftovers(self, image, service=None):
        with self.lock:
            leftovers = [
                cid
                for cid, c in self.containers.items()
                if c["image"] == image and c["service"] == service
            ]
        for cid in leftovers:
            try:
                self.remove_workload(cid)
            except EngineError:
                pass

    def image_exists(self, digest):
        self._record("image_exists", digest)
        return digest in self.images

    def pull_image(self, name, digest, credentials=None):
        self._record("pull", name, digest, credentials)
        self.images.add(digest)

    def remove_image(self, digest):
        self._record("remove_image", digest)
        self.images.discard(digest)

    def create_workload(self, name, digest, args, options, env=(), host_options=None):
        self._record("create", name, digest, tuple(args))
        self._remove_leftovers(name)
        return self._new_container(name, digest, image=name)

    def create_compose_workloads(self, name, digest, lines):
        self._record("create_compose", name, digest)
        created = []
        for svc in compose.parse(lines):
            self._remove_leftovers(name, svc.name)
            created.append(
                self._new_container(svc.name, digest, compose_run_key(digest, svc.name), image=name, service=svc.name)
            )
        return created

    def start_workload(self, workload_id):
        self._record("start", workload_id)
        with self.lock:
            self.containers[workload_id]["running"] = True

    def stop_workload(self, workload_id):
        self._record("stop", workload_id)
        with self.lock:
            if workload_id in self.containers:
                self.containers[workload_id]["running"] = False

    def remove_workload(self, workload_id):
        self._record("remove", workload_id)
        with self.lock:
            self.containers.pop(workload_id, None)


@pytest.fixture
def engine():
    return FakeEngine()
