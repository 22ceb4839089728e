from __future__ import annotations

import copy
import os
import sys
import threading
from typing import Any

import pytest

# Ensure project root is importable (so `import main` / `import smr` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from smr import db  # noqa: E402
from smr.errors import AlreadyExists, Conflict, NotFound  # noqa: E402
from smr.lifecycle import MergeLifecycle  # noqa: E402
from smr.models import (  # noqa: E402
    KIND_DEPLOYMENT,
    KIND_MERGE,
    KIND_POD,
    KIND_REPLICA_SET,
    KIND_SERVICE,
    DeploymentRecord,
    MergeResource,
    OwnerRef,
    PodRecord,
    ReplicaSetRecord,
    ServicePort,
    ServiceRecord,
)
from smr.runtime import RuntimeState  # noqa: E402
from smr.settings import Settings  # noqa: E402
from smr.store import matches  # noqa: E402


class FakeObjectStore:
    """In-memory object store.

    Updating a deployment's pod template behaves like a rollout: its pods are
    replaced at once by new pods (new names) carrying the new template labels.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], Any] = {}
        self.replicas: dict[tuple[str, str], int] = {}
        self.revisions: dict[tuple[str, str], int] = {}
        self.writes: list[tuple[str, str, str]] = []  # (op, kind, name)
        self.failures: dict[tuple[str, str, str | None], Exception] = {}
        self._rv = 0
        self._lock = threading.RLock()

    # --- test helpers --------------------------------------------------

    def fail_once(self, op: str, kind: str, exc: Exception, name: str | None = None) -> None:
        self.failures[(op, kind, name)] = exc

    def _maybe_fail(self, op: str, kind: str, name: str) -> None:
        for key in ((op, kind, name), (op, kind, None)):
            exc = self.failures.pop(key, None)
            if exc is not None:
                raise exc

    def _next_rv(self) -> str:
        self._rv += 1
        return str(self._rv)

    def add_app(self, service: str, port: int, namespace: str = "default", replicas: int = 1, labels: dict[str, str] | None = None) -> None:
        """A Service selecting `name=<service>` backed by deployment `<service>-deploy`."""
        template = {"name": service} if labels is None else dict(labels)
        dep = f"{service}-deploy"
        self.objects[(KIND_DEPLOYMENT, namespace, dep)] = DeploymentRecord(
            name=dep, namespace=namespace, template_labels=dict(template), resource_version=self._next_rv()
        )
        self.replicas[(namespace, dep)] = replicas
        self._rollout(namespace, dep, template)
        self.objects[(KIND_SERVICE, namespace, service)] = ServiceRecord(
            name=service,
            namespace=namespace,
            selector=dict(template),
            ports=[ServicePort(port=port, target_port=8080, name="http")],
        )

    def add_merge(self, name: str, services: list[str], namespace: str = "default", merged_service_name: str | None = None) -> None:
        self.objects[(KIND_MERGE, namespace, name)] = MergeResource(
            name=name, namespace=namespace, services=list(services), merged_service_name=merged_service_name
        )

    def set_intent(self, name: str, services: list[str], namespace: str = "default") -> None:
        self.objects[(KIND_MERGE, namespace, name)].services = list(services)

    def remove_merge(self, name: str, namespace: str = "default") -> None:
        del self.objects[(KIND_MERGE, namespace, name)]

    def pods(self, namespace: str = "default") -> list[PodRecord]:
        return [o for (k, ns, _), o in self.objects.items() if k == KIND_POD and ns == namespace]

    def service(self, name: str, namespace: str = "default") -> ServiceRecord | None:
        return self.objects.get((KIND_SERVICE, namespace, name))

    def deployment(self, name: str, namespace: str = "default") -> DeploymentRecord:
        return self.objects[(KIND_DEPLOYMENT, namespace, name)]

    def writes_of(self, op: str, kind: str) -> list[str]:
        return [n for o, k, n in self.writes if o == op and k == kind]

    def _rollout(self, namespace: str, dep: str, template: dict[str, str]) -> None:
        for key, obj in list(self.objects.items()):
            if key[0] == KIND_REPLICA_SET and key[1] == namespace and obj.owners[0].name == dep:
                del self.objects[key]
            if key[0] == KIND_POD and key[1] == namespace and obj.owners[0].name.startswith(f"{dep}-rs"):
                del self.objects[key]
        rev = self.revisions.get((namespace, dep), 0) + 1
        self.revisions[(namespace, dep)] = rev
        rs = f"{dep}-rs{rev}"
        self.objects[(KIND_REPLICA_SET, namespace, rs)] = ReplicaSetRecord(
            name=rs, namespace=namespace, owners=[OwnerRef(kind=KIND_DEPLOYMENT, name=dep)]
        )
        for i in range(self.replicas[(namespace, dep)]):
            pod = f"{rs}-pod{i}"
            self.objects[(KIND_POD, namespace, pod)] = PodRecord(
                name=pod, namespace=namespace, labels=dict(template), owners=[OwnerRef(kind=KIND_REPLICA_SET, name=rs)]
            )

    # --- ObjectStore ---------------------------------------------------

    def get(self, kind: str, namespace: str, name: str) -> Any:
        with self._lock:
            self._maybe_fail("get", kind, name)
            obj = self.objects.get((kind, namespace, name))
            if obj is None:
                raise NotFound(kind, namespace, name)
            return copy.deepcopy(obj)

    def list(self, kind: str, namespace: str, selector: dict[str, str] | None = None) -> list[Any]:
        with self._lock:
            self._maybe_fail("list", kind, "*")
            out = []
            for (k, ns, _), obj in sorted(self.objects.items(), key=lambda kv: kv[0]):
                if k != kind or ns != namespace:
                    continue
                if kind == KIND_POD and not matches(obj.labels, selector):
                    continue
                out.append(copy.deepcopy(obj))
            return out

    def create(self, obj: Any) -> Any:
        with self._lock:
            self._maybe_fail("create", obj.kind, obj.name)
            key = (obj.kind, obj.namespace, obj.name)
            if key in self.objects:
                raise AlreadyExists(*key)
            self.objects[key] = copy.deepcopy(obj)
            self.writes.append(("create", obj.kind, obj.name))
            return copy.deepcopy(obj)

    def update(self, obj: Any) -> Any:
        with self._lock:
            self._maybe_fail("update", obj.kind, obj.name)
            key = (obj.kind, obj.namespace, obj.name)
            cur = self.objects.get(key)
            if cur is None:
                raise NotFound(*key)
            new = copy.deepcopy(obj)
            if isinstance(obj, DeploymentRecord):
                if obj.resource_version and obj.resource_version != cur.resource_version:
                    raise Conflict(f"Deployment {obj.name} changed")
                new.resource_version = self._next_rv()
                if new.template_labels != cur.template_labels:
                    self._rollout(obj.namespace, obj.name, new.template_labels)
            self.objects[key] = new
            self.writes.append(("update", obj.kind, obj.name))
            return copy.deepcopy(new)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        with self._lock:
            self._maybe_fail("delete", kind, name)
            if self.objects.pop((kind, namespace, name), None) is None:
                raise NotFound(kind, namespace, name)
            self.writes.append(("delete", kind, name))


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Point the sqlite store at a fresh file for every test."""
    cfg = Settings(db_path=str(tmp_path / "smr.db"))
    monkeypatch.setattr(db, "settings", cfg)
    db.init_db()
    return cfg


@pytest.fixture
def cfg(tmp_path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "smr.db"),
        propagation_interval_s=0.0,
        propagation_timeout_s=5.0,
        workers=2,
        poll_interval_s=1,
    )


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def lifecycle(store, cfg) -> MergeLifecycle:
    return MergeLifecycle(store, runtime=RuntimeState(), config=cfg)
