from __future__ import annotations

import secrets

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from smr import db
from smr.api_models import MergeStateOut, OutcomeOut
from smr.kube_ops import KubeObjectStore, load_config
from smr.lifecycle import MergeLifecycle
from smr.models import ResourceId
from smr.reconciler import Reconciler
from smr.runtime import RuntimeState
from smr.settings import settings
from smr.store import ObjectStore

app = FastAPI(title="Service Merge Reconciler")
security = HTTPBasic()

# Shared by the API and the background loop so leases cover both.
runtime = RuntimeState()
_store: ObjectStore | None = None
_reconciler: Reconciler | None = None


def get_store() -> ObjectStore:
    global _store
    if _store is None:
        load_config()
        _store = KubeObjectStore()
    return _store


def get_lifecycle(store: ObjectStore = Depends(get_store)) -> MergeLifecycle:
    return MergeLifecycle(store, runtime=runtime)


def get_current_username(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    ok_user = secrets.compare_digest(credentials.username, settings.api_user)
    ok_pass = secrets.compare_digest(credentials.password, settings.api_password)
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


@app.on_event("startup")
def startup() -> None:
    global _reconciler
    db.init_db()
    if settings.enable_loop:
        store = get_store()
        _reconciler = Reconciler(store, MergeLifecycle(store, runtime=runtime))
        _reconciler.start()


@app.on_event("shutdown")
def shutdown() -> None:
    if _reconciler is not None:
        _reconciler.stop()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/merges", response_model=list[MergeStateOut])
def list_merges() -> list[MergeStateOut]:
    return [MergeStateOut.from_state(r.resource_id, r.state, r.updated_at) for r in db.list_states()]


@app.get("/merges/{namespace}/{name}", response_model=MergeStateOut)
def get_merge(namespace: str, name: str) -> MergeStateOut:
    rid = ResourceId(namespace, name)
    return MergeStateOut.from_state(rid.key, db.load_state(rid))


@app.post("/merges/{namespace}/{name}/reconcile", response_model=OutcomeOut)
def reconcile_merge(
    namespace: str,
    name: str,
    lifecycle: MergeLifecycle = Depends(get_lifecycle),
    username: str = Depends(get_current_username),
) -> OutcomeOut:
    rid = ResourceId(namespace, name)
    db.log_event("INFO", f"Manual reconcile requested by {username}", resource=rid)
    return OutcomeOut.from_outcome(rid.key, lifecycle.reconcile(rid))


@app.get("/events")
def events(limit: int = 100, resource: str | None = None) -> list[dict]:
    return db.latest_events(limit=max(1, min(1000, limit)), resource=resource)


@app.get("/outcomes")
def outcomes() -> list[dict]:
    """Last reconcile outcome per resource seen by this process."""
    return [
        {"resource": o.resource, "outcome": o.outcome, "detail": o.detail, "at": o.at}
        for o in sorted(runtime.list_outcomes(), key=lambda o: o.resource)
    ]
