from __future__ import annotations

from dataclasses import dataclass

from . import db
from .errors import NotFound
from .models import KIND_DEPLOYMENT, KIND_POD, KIND_REPLICA_SET, KIND_SERVICE, PodRecord, ResourceId, ServiceRecord
from .store import ObjectStore


@dataclass(frozen=True)
class PodMember:
    pod: str
    service: str


class MembershipResolver:
    """Resolves service -> pods and pod -> owning deployment within one namespace."""

    def __init__(self, store: ObjectStore, resource: ResourceId):
        self.store = store
        self.resource = resource

    @property
    def namespace(self) -> str:
        return self.resource.namespace

    def get_service(self, name: str) -> ServiceRecord:
        # NotFound propagates: the caller decides whether absence is fatal.
        return self.store.get(KIND_SERVICE, self.namespace, name)

    def pods_matching(self, selector: dict[str, str]) -> list[PodRecord]:
        return list(self.store.list(KIND_POD, self.namespace, selector))

    def resolve_pods(self, services: list[str]) -> list[PodMember]:
        members: list[PodMember] = []
        for svc in services:
            service = self.get_service(svc)
            if not service.selector:
                # A selector-less service has no pods behind it.
                db.log_event("WARN", "Service has no selector; no pods to merge", resource=self.resource, service=svc)
                continue
            for pod in self.pods_matching(service.selector):
                members.append(PodMember(pod=pod.name, service=svc))
        return members

    def get_pod(self, name: str) -> PodRecord | None:
        try:
            return self.store.get(KIND_POD, self.namespace, name)
        except NotFound:
            return None

    def resolve_deployment(self, pod: PodRecord) -> str | None:
        """Walk pod -> ReplicaSet -> Deployment. None when there is no deployment owner."""
        for owner in pod.owners:
            if owner.kind != KIND_REPLICA_SET:
                continue
            try:
                rs = self.store.get(KIND_REPLICA_SET, self.namespace, owner.name)
            except NotFound:
                continue
            for rs_owner in rs.owners:
                if rs_owner.kind == KIND_DEPLOYMENT:
                    return rs_owner.name
        return None
