from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

import yaml
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from cwr import db
from cwr.api_models import ConfigureRequest
from cwr.config import ConfigError, DesiredConfig
from cwr.docker_ops import DockerEngine
from cwr.history import RunHistory
from cwr.reconciler import ReconcileError, Reconciler, ReconcilerClosed
from cwr.settings import settings
from cwr.workloads import EngineDriver


def build_engine() -> EngineDriver:
    return DockerEngine()


def load_config_file(path: str) -> DesiredConfig:
    """Read a desired config from YAML (JSON is a subset)."""
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")
    return DesiredConfig.from_attributes(ConfigureRequest.model_validate(raw).attributes())


def _reconciler() -> Reconciler:
    rec = getattr(app.state, "reconciler", None)
    if rec is None:
        raise HTTPException(status_code=503, detail="Reconciler not started")
    return rec


def _status_payload(rec: Reconciler) -> dict:
    body = rec.describe()
    body["workloads"] = {cid: st.to_dict() for cid, st in rec.status().items()}
    return body


# --- LIFECYCLE ---
def startup() -> None:
    db.init_db()
    rec = Reconciler(build_engine(), RunHistory(settings.data_dir))
    app.state.reconciler = rec
    db.log_event("INFO", "Container Workload Reconciler started")

    if settings.config_file and os.path.exists(settings.config_file):
        try:
            rec.configure(load_config_file(settings.config_file))
        except (ConfigError, ReconcileError, ValueError, OSError) as e:
            # Keep serving; the failure shows up in /status and /events.
            db.log_event("ERROR", f"Initial configuration from {settings.config_file} failed: {e}")


def shutdown() -> None:
    rec = getattr(app.state, "reconciler", None)
    if rec is not None:
        rec.close()


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    startup()
    try:
        yield
    finally:
        shutdown()


app = FastAPI(title="Container Workload Reconciler", lifespan=lifespan)


# --- API ---
@app.put("/config")
def put_config(req: ConfigureRequest) -> dict:
    rec = _reconciler()
    try:
        desired = DesiredConfig.from_attributes(req.attributes())
        changed = rec.configure(desired)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail={"errors": e.problems})
    except ReconcilerClosed as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ReconcileError as e:
        raise HTTPException(status_code=502, detail=str(e))
    body = _status_payload(rec)
    body["changed"] = changed
    return body


@app.get("/status")
def get_status() -> dict:
    return _status_payload(_reconciler())


@app.get("/ready")
def get_ready() -> JSONResponse:
    ready = _reconciler().is_ready()
    return JSONResponse({"ready": ready}, status_code=200 if ready else 503)


@app.get("/events")
def get_events(limit: int = 100, level: str | None = None) -> list[dict]:
    return db.latest_events(limit=max(1, min(limit, 1000)), level=level)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("CWR_HOST", "0.0.0.0"), port=int(os.getenv("CWR_PORT", "8000")))
