from __future__ import annotations

from typing import Any, Callable

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .errors import AlreadyExists, Conflict, NotFound, StoreUnavailable
from .models import (
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
from .settings import Settings, settings
from .store import selector_string


def load_config(in_cluster: bool = settings.in_cluster) -> None:
    """Load in-cluster config when asked (or available), else the local kubeconfig."""
    if in_cluster:
        config.load_incluster_config()
        return
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def _owners(meta: Any) -> list[OwnerRef]:
    return [OwnerRef(kind=o.kind, name=o.name) for o in (meta.owner_references or [])]


def _target_port(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def service_from_k8s(obj: client.V1Service) -> ServiceRecord:
    ports = [
        ServicePort(port=p.port, target_port=_target_port(p.target_port), name=p.name or "", protocol=p.protocol or "TCP")
        for p in (obj.spec.ports or [])
    ]
    return ServiceRecord(
        name=obj.metadata.name,
        namespace=obj.metadata.namespace,
        selector=dict(obj.spec.selector or {}),
        ports=ports,
    )


def service_to_k8s(rec: ServiceRecord) -> client.V1Service:
    return client.V1Service(
        metadata=client.V1ObjectMeta(name=rec.name, namespace=rec.namespace),
        spec=client.V1ServiceSpec(
            selector=dict(rec.selector),
            ports=[
                client.V1ServicePort(name=p.name, port=p.port, target_port=p.target_port, protocol=p.protocol)
                for p in rec.ports
            ],
        ),
    )


def deployment_from_k8s(obj: client.V1Deployment) -> DeploymentRecord:
    template_meta = obj.spec.template.metadata
    return DeploymentRecord(
        name=obj.metadata.name,
        namespace=obj.metadata.namespace,
        template_labels=dict((template_meta.labels if template_meta else None) or {}),
        annotations=dict(obj.metadata.annotations or {}),
        resource_version=obj.metadata.resource_version,
    )


def merge_resource_from_k8s(obj: dict[str, Any]) -> MergeResource:
    meta = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    return MergeResource(
        name=meta.get("name", ""),
        namespace=meta.get("namespace", ""),
        services=list(spec.get("services") or []),
        merged_service_name=spec.get("mergedServiceName"),
        status=dict(obj.get("status") or {}),
    )


class KubeObjectStore:
    """ObjectStore backed by the Kubernetes API."""

    def __init__(
        self,
        core: client.CoreV1Api | None = None,
        apps: client.AppsV1Api | None = None,
        custom: client.CustomObjectsApi | None = None,
        cfg: Settings = settings,
    ):
        self.core = core or client.CoreV1Api()
        self.apps = apps or client.AppsV1Api()
        self.custom = custom or client.CustomObjectsApi()
        self.cfg = cfg

    def _call(self, fn: Callable[[], Any], kind: str, namespace: str, name: str, creating: bool = False) -> Any:
        try:
            return fn()
        except ApiException as e:
            if e.status == 404:
                raise NotFound(kind, namespace, name) from e
            if e.status == 409:
                if creating:
                    raise AlreadyExists(kind, namespace, name) from e
                raise Conflict(f"{kind} {namespace}/{name} was modified concurrently") from e
            raise StoreUnavailable(f"{kind} {namespace}/{name}: HTTP {e.status} {e.reason}") from e
        except urllib3.exceptions.HTTPError as e:
            raise StoreUnavailable(f"{kind} {namespace}/{name}: {type(e).__name__}: {e}") from e

    def _crd(self) -> tuple[str, str, str]:
        return self.cfg.crd_group, self.cfg.crd_version, self.cfg.crd_plural

    def get(self, kind: str, namespace: str, name: str) -> Any:
        if kind == KIND_SERVICE:
            return service_from_k8s(self._call(lambda: self.core.read_namespaced_service(name, namespace), kind, namespace, name))
        if kind == KIND_DEPLOYMENT:
            return deployment_from_k8s(
                self._call(lambda: self.apps.read_namespaced_deployment(name, namespace), kind, namespace, name)
            )
        if kind == KIND_REPLICA_SET:
            rs = self._call(lambda: self.apps.read_namespaced_replica_set(name, namespace), kind, namespace, name)
            return ReplicaSetRecord(name=rs.metadata.name, namespace=rs.metadata.namespace, owners=_owners(rs.metadata))
        if kind == KIND_POD:
            pod = self._call(lambda: self.core.read_namespaced_pod(name, namespace), kind, namespace, name)
            return PodRecord(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
                labels=dict(pod.metadata.labels or {}),
                owners=_owners(pod.metadata),
            )
        if kind == KIND_MERGE:
            group, version, plural = self._crd()
            obj = self._call(
                lambda: self.custom.get_namespaced_custom_object(group, version, namespace, plural, name), kind, namespace, name
            )
            return merge_resource_from_k8s(obj)
        raise ValueError(f"Unsupported kind {kind!r}")

    def list(self, kind: str, namespace: str, selector: dict[str, str] | None = None) -> list[Any]:
        label_selector = selector_string(selector)
        kwargs: dict[str, Any] = {"label_selector": label_selector} if label_selector else {}
        if kind == KIND_POD:
            pods = self._call(lambda: self.core.list_namespaced_pod(namespace, **kwargs), kind, namespace, "*")
            return [
                PodRecord(
                    name=p.metadata.name,
                    namespace=p.metadata.namespace,
                    labels=dict(p.metadata.labels or {}),
                    owners=_owners(p.metadata),
                )
                for p in pods.items
                # Terminating pods are on their way out; they are not members.
                if p.metadata.deletion_timestamp is None
            ]
        if kind == KIND_SERVICE:
            svcs = self._call(lambda: self.core.list_namespaced_service(namespace, **kwargs), kind, namespace, "*")
            return [service_from_k8s(s) for s in svcs.items]
        if kind == KIND_DEPLOYMENT:
            deps = self._call(lambda: self.apps.list_namespaced_deployment(namespace, **kwargs), kind, namespace, "*")
            return [deployment_from_k8s(d) for d in deps.items]
        if kind == KIND_MERGE:
            group, version, plural = self._crd()
            objs = self._call(
                lambda: self.custom.list_namespaced_custom_object(group, version, namespace, plural, **kwargs),
                kind,
                namespace,
                "*",
            )
            return [merge_resource_from_k8s(o) for o in objs.get("items", [])]
        raise ValueError(f"Unsupported kind {kind!r}")

    def create(self, obj: Any) -> Any:
        if isinstance(obj, ServiceRecord):
            created = self._call(
                lambda: self.core.create_namespaced_service(obj.namespace, service_to_k8s(obj)),
                obj.kind,
                obj.namespace,
                obj.name,
                creating=True,
            )
            return service_from_k8s(created)
        raise ValueError(f"Creating {type(obj).__name__} is not supported")

    def update(self, obj: Any) -> Any:
        if isinstance(obj, DeploymentRecord):
            return self._update_deployment(obj)
        if isinstance(obj, MergeResource):
            group, version, plural = self._crd()
            body = {"status": obj.status}
            self._call(
                lambda: self.custom.patch_namespaced_custom_object_status(group, version, obj.namespace, plural, obj.name, body),
                obj.kind,
                obj.namespace,
                obj.name,
            )
            return obj
        raise ValueError(f"Updating {type(obj).__name__} is not supported")

    def _update_deployment(self, rec: DeploymentRecord) -> DeploymentRecord:
        dep = self._call(lambda: self.apps.read_namespaced_deployment(rec.name, rec.namespace), rec.kind, rec.namespace, rec.name)
        if rec.resource_version and dep.metadata.resource_version != rec.resource_version:
            raise Conflict(f"Deployment {rec.namespace}/{rec.name} changed since it was read")
        if dep.spec.template.metadata is None:
            dep.spec.template.metadata = client.V1ObjectMeta()
        dep.spec.template.metadata.labels = dict(rec.template_labels)
        dep.metadata.annotations = dict(rec.annotations) or None
        replaced = self._call(
            lambda: self.apps.replace_namespaced_deployment(rec.name, rec.namespace, dep), rec.kind, rec.namespace, rec.name
        )
        return deployment_from_k8s(replaced)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        if kind == KIND_SERVICE:
            self._call(lambda: self.core.delete_namespaced_service(name, namespace), kind, namespace, name)
            return
        raise ValueError(f"Deleting {kind} is not supported")
