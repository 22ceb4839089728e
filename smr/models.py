from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

KIND_SERVICE = "Service"
KIND_DEPLOYMENT = "Deployment"
KIND_REPLICA_SET = "ReplicaSet"
KIND_POD = "Pod"
KIND_MERGE = "SvcMergerObj"

MERGE_LABEL = "merge"
ORIGIN_LABEL = "name"
ORIGIN_ANNOTATION = "smr.io/origin-label"
PREVIOUS_ORIGIN_ANNOTATION = "smr.io/previous-name"
MERGED_PORT_NAME = "merged-service-port"


@dataclass(frozen=True)
class ResourceId:
    namespace: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, key: str) -> "ResourceId":
        namespace, sep, name = key.partition("/")
        if not sep or not namespace or not name:
            raise ValueError(f"Invalid resource id {key!r}; expected 'namespace/name'.")
        return cls(namespace=namespace, name=name)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class OwnerRef:
    kind: str
    name: str


@dataclass(frozen=True)
class ServicePort:
    port: int
    target_port: int
    name: str = MERGED_PORT_NAME
    protocol: str = "TCP"


@dataclass
class ServiceRecord:
    kind: ClassVar[str] = KIND_SERVICE

    name: str
    namespace: str
    selector: dict[str, str] = field(default_factory=dict)
    ports: list[ServicePort] = field(default_factory=list)


@dataclass
class DeploymentRecord:
    kind: ClassVar[str] = KIND_DEPLOYMENT

    name: str
    namespace: str
    template_labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    resource_version: str | None = None


@dataclass
class ReplicaSetRecord:
    kind: ClassVar[str] = KIND_REPLICA_SET

    name: str
    namespace: str
    owners: list[OwnerRef] = field(default_factory=list)


@dataclass
class PodRecord:
    kind: ClassVar[str] = KIND_POD

    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    owners: list[OwnerRef] = field(default_factory=list)


@dataclass
class MergeResource:
    """The SvcMergerObj custom resource: declared intent plus its status."""

    kind: ClassVar[str] = KIND_MERGE

    name: str
    namespace: str
    services: list[str] = field(default_factory=list)
    merged_service_name: str | None = None
    status: dict[str, Any] = field(default_factory=dict)

    @property
    def resource_id(self) -> ResourceId:
        return ResourceId(self.namespace, self.name)


@dataclass
class MergeState:
    """Actual merge status of one managed resource instance."""

    active: bool = False
    services: set[str] = field(default_factory=set)
    port_by_service: dict[str, int] = field(default_factory=dict)
    merged_pod_ids: set[str] = field(default_factory=set)
    merged_service_name: str = ""
    # Original selectors, restored on rollback. Absent for services captured without one.
    selector_by_service: dict[str, dict[str, str]] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.active:
            if (
                self.services
                or self.port_by_service
                or self.merged_pod_ids
                or self.merged_service_name
                or self.selector_by_service
            ):
                raise ValueError("An inactive MergeState must be empty.")
            return
        missing = self.services - set(self.port_by_service)
        if missing:
            raise ValueError(f"No captured port for merged services: {sorted(missing)}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "active": self.active,
            "services": sorted(self.services),
            "port_by_service": dict(sorted(self.port_by_service.items())),
            "merged_pod_ids": sorted(self.merged_pod_ids),
            "merged_service_name": self.merged_service_name,
            "selector_by_service": {k: dict(v) for k, v in sorted(self.selector_by_service.items())},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MergeState":
        return cls(
            active=bool(data.get("active", False)),
            services=set(data.get("services") or []),
            port_by_service={k: int(v) for k, v in (data.get("port_by_service") or {}).items()},
            merged_pod_ids=set(data.get("merged_pod_ids") or []),
            merged_service_name=data.get("merged_service_name") or "",
            selector_by_service={
                k: {str(lk): str(lv) for lk, lv in (v or {}).items()}
                for k, v in (data.get("selector_by_service") or {}).items()
            },
        )
