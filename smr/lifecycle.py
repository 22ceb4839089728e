from __future__ import annotations

import re
import sqlite3

from . import db
from .diff import diff
from .errors import (
    AlreadyExists,
    Conflict,
    ConflictOnWrite,
    Done,
    FatalError,
    InternalError,
    InvalidIntent,
    MergeError,
    NotFound,
    NotFoundFatal,
    Outcome,
    PropagationCancelled,
    PropagationTimeout,
    RetryAfter,
    StoreError,
    StoreUnavailable,
    StoreUnavailableError,
)
from .labels import LabelMutator
from .membership import MembershipResolver, PodMember
from .models import (
    KIND_MERGE,
    KIND_SERVICE,
    MERGE_LABEL,
    ORIGIN_LABEL,
    MergeResource,
    MergeState,
    ResourceId,
    ServicePort,
    ServiceRecord,
)
from .propagation import wait_for_stable
from .runtime import LastOutcome, RuntimeState
from .settings import Settings, settings
from .store import ObjectStore

SERVICE_NAME_RE = re.compile(r"^[a-z]([a-z0-9\-]{0,61}[a-z0-9])?$")


class MergeLifecycle:
    """Drives one managed resource between the Inactive and Active merge states.

    Transitions:
      - activate: intent appears while inactive
      - update:   intent changes while active
      - rollback: intent is withdrawn (emptied or the resource deleted)

    Every step either checks existing state first or is idempotent, so a
    transition that failed half way is simply re-run from the top.
    """

    def __init__(self, store: ObjectStore, runtime: RuntimeState | None = None, config: Settings = settings):
        self.store = store
        self.runtime = runtime or RuntimeState()
        self.config = config

    # --- entry point ------------------------------------------------------

    def reconcile(self, resource_id: ResourceId) -> Outcome:
        key = resource_id.key
        with self.runtime.lease(key) as acquired:
            if not acquired:
                self.runtime.set_outcome(LastOutcome(key, "busy", "transition already running"))
                return RetryAfter(self.config.lease_retry_s, "transition already running")

            resource: MergeResource | None = None
            try:
                try:
                    resource = self._load_resource(resource_id)
                    state = self._run(resource_id, resource)
                except NotFound as e:
                    raise NotFoundFatal(str(e)) from e
                except (Conflict, AlreadyExists) as e:
                    raise ConflictOnWrite(str(e)) from e
                except StoreUnavailable as e:
                    raise StoreUnavailableError(str(e)) from e
                except MergeError:
                    raise
                except Exception as e:
                    raise InternalError(f"{type(e).__name__}: {e}") from e
            except MergeError as e:
                outcome = self._classify(key, e)
                db.log_event("ERROR" if isinstance(outcome, FatalError) else "WARN", f"{e.kind}: {e}", resource=key)
                self.runtime.set_outcome(LastOutcome(key, "fatal" if isinstance(outcome, FatalError) else "retry", f"{e.kind}: {e}"))
                self._write_status(resource, self._state_for_status(resource_id), e)
                return outcome

            self.runtime.reset_failures(key)
            self.runtime.set_outcome(LastOutcome(key, "done", "active" if state.active else "inactive"))
            self._write_status(resource, state, None)
            return Done()

    def _classify(self, key: str, e: MergeError) -> Outcome:
        if not e.retryable:
            return FatalError(f"{e.kind}: {e}")
        if isinstance(e, StoreUnavailableError):
            n = self.runtime.record_store_failure(key)
            delay = min(self.config.max_backoff_s, self.config.store_backoff_s * (2**n))
            return RetryAfter(delay, e.kind)
        if isinstance(e, (PropagationTimeout, PropagationCancelled)):
            return RetryAfter(self.config.propagation_retry_s, e.kind)
        return RetryAfter(self.config.conflict_retry_s, e.kind)

    def _load_resource(self, resource_id: ResourceId) -> MergeResource | None:
        try:
            return self.store.get(KIND_MERGE, resource_id.namespace, resource_id.name)
        except NotFound:
            return None

    def _run(self, resource_id: ResourceId, resource: MergeResource | None) -> MergeState:
        state = db.load_state(resource_id)
        intent = set(resource.services) if resource is not None else set()
        for svc in intent:
            if not SERVICE_NAME_RE.match(svc):
                raise InvalidIntent(f"Invalid service name {svc!r}")

        if not intent:
            if state.active:
                return self.rollback(resource_id, state)
            return state
        if not state.active:
            name = (resource.merged_service_name if resource else None) or self.config.merged_service_name
            return self.activate(resource_id, intent, name)
        return self.update(resource_id, state, intent)

    # --- transitions ------------------------------------------------------

    def activate(self, resource_id: ResourceId, intent: set[str], merged_service_name: str) -> MergeState:
        db.log_event("INFO", f"Activating merge of {sorted(intent)}", resource=resource_id)
        resolver = MembershipResolver(self.store, resource_id)
        mutator = LabelMutator(self.store, resource_id)
        services = sorted(intent)

        ports, selectors, gone = self._capture_originals(resolver, resource_id, services)
        present = [s for s in services if s not in gone]
        self._merge_members(resolver, mutator, self._members(resolver, present, gone))

        # Re-resolve after the restarts so merged_pod_ids names the settled pods.
        settled = self._wait(lambda: self._merged_pods(resolver, set(services)))

        # The merged service must be serving before the originals go away.
        self._ensure_service(self._merged_service(resource_id, merged_service_name))
        for svc in present:
            self._delete_if_exists(resource_id, svc)

        state = MergeState(
            active=True,
            services=set(services),
            port_by_service=ports,
            merged_pod_ids=settled,
            merged_service_name=merged_service_name,
            selector_by_service=selectors,
        )
        db.save_state(resource_id, state)
        db.log_event("INFO", f"Merged {len(services)} services into {merged_service_name} ({len(settled)} pods)", resource=resource_id)
        return state

    def update(self, resource_id: ResourceId, state: MergeState, intent: set[str]) -> MergeState:
        d = diff(state.services, intent)
        resolver = MembershipResolver(self.store, resource_id)
        mutator = LabelMutator(self.store, resource_id)
        if not d.empty:
            db.log_event("INFO", f"Updating merge: release {d.to_release}, absorb {d.to_absorb}", resource=resource_id)

        for svc in d.to_release:
            selector = {ORIGIN_LABEL: svc, MERGE_LABEL: "true"}
            # Recreated before its deployments lose the merge label.
            self._ensure_service(self._original_service(resource_id, svc, state.port_by_service[svc], selector))
            for pod in resolver.pods_matching(selector):
                dep = resolver.resolve_deployment(pod)
                if dep is not None:
                    mutator.ensure_released(dep)
            state.services.discard(svc)
            state.port_by_service.pop(svc, None)
            state.selector_by_service.pop(svc, None)
            db.save_state(resource_id, state)
            db.log_event("INFO", "Released service from merge", resource=resource_id, service=svc)

        if d.to_absorb:
            ports, selectors, gone = self._capture_originals(resolver, resource_id, d.to_absorb)
            present = [s for s in d.to_absorb if s not in gone]
            state.services.update(d.to_absorb)
            state.port_by_service.update(ports)
            state.selector_by_service.update(selectors)
            self._merge_members(resolver, mutator, self._members(resolver, present, gone))

        services = set(state.services)
        if mutator.writes:
            state.merged_pod_ids = self._wait(lambda: self._merged_pods(resolver, services))
        else:
            state.merged_pod_ids = self._merged_pods(resolver, services)

        self._ensure_service(self._merged_service(resource_id, state.merged_service_name))
        for svc in d.to_absorb:
            self._delete_if_exists(resource_id, svc)

        db.save_state(resource_id, state)
        return state

    def rollback(self, resource_id: ResourceId, state: MergeState) -> MergeState:
        db.log_event("INFO", f"Rolling back merge of {sorted(state.services)}", resource=resource_id)
        resolver = MembershipResolver(self.store, resource_id)
        mutator = LabelMutator(self.store, resource_id)

        # Pods recorded at the last refresh plus any that restarted since.
        pods = set(state.merged_pod_ids) | self._merged_pods(resolver, state.services)
        for name in sorted(pods):
            pod = resolver.get_pod(name)
            if pod is None:
                continue
            dep = resolver.resolve_deployment(pod)
            if dep is not None:
                mutator.ensure_released(dep)

        if state.merged_service_name:
            self._delete_if_exists(resource_id, state.merged_service_name)
        for svc in sorted(state.services):
            selector = state.selector_by_service.get(svc) or {ORIGIN_LABEL: svc}
            self._ensure_service(self._original_service(resource_id, svc, state.port_by_service[svc], selector))

        cleared = MergeState()
        db.save_state(resource_id, cleared)
        db.log_event("INFO", "Merge rolled back", resource=resource_id)
        return cleared

    # --- helpers ----------------------------------------------------------

    def _capture_originals(
        self, resolver: MembershipResolver, resource_id: ResourceId, services: list[str]
    ) -> tuple[dict[str, int], dict[str, dict[str, str]], set[str]]:
        """Read each service's first port and selector and journal them before anything is mutated.

        A service that is already gone but has a journaled port was deleted by
        an earlier attempt of this same transition; it is reported in `gone`.
        """
        journal = db.captured_ports(resource_id)
        journal_selectors = db.captured_selectors(resource_id)
        ports: dict[str, int] = {}
        selectors: dict[str, dict[str, str]] = {}
        gone: set[str] = set()
        for svc in services:
            try:
                record = resolver.get_service(svc)
            except NotFound:
                if svc in journal:
                    ports[svc] = journal[svc]
                    if svc in journal_selectors:
                        selectors[svc] = journal_selectors[svc]
                    gone.add(svc)
                    continue
                raise NotFoundFatal(f"Service {resource_id.namespace}/{svc} does not exist")
            if not record.ports:
                raise NotFoundFatal(f"Service {resource_id.namespace}/{svc} exposes no ports")
            ports[svc] = int(record.ports[0].port)
            if record.selector:
                selectors[svc] = dict(record.selector)
        db.record_captured_ports(resource_id, ports, selectors)
        return ports, selectors, gone

    def _members(self, resolver: MembershipResolver, present: list[str], gone: set[str]) -> list[PodMember]:
        members = resolver.resolve_pods(present)
        for svc in sorted(gone):
            for pod in resolver.pods_matching({ORIGIN_LABEL: svc, MERGE_LABEL: "true"}):
                members.append(PodMember(pod=pod.name, service=svc))
        return members

    def _merge_members(self, resolver: MembershipResolver, mutator: LabelMutator, members: list[PodMember]) -> None:
        for m in members:
            pod = resolver.get_pod(m.pod)
            if pod is None:
                continue
            dep = resolver.resolve_deployment(pod)
            if dep is None:
                db.log_event("WARN", f"Pod {m.pod} has no owning deployment; skipping", resource=resolver.resource, service=m.service)
                continue
            mutator.ensure_merged(dep, m.service)

    def _merged_pods(self, resolver: MembershipResolver, services: set[str]) -> set[str]:
        return {
            p.name
            for p in resolver.pods_matching({MERGE_LABEL: "true"})
            if p.labels.get(ORIGIN_LABEL) in services
        }

    def _wait(self, read) -> set[str]:
        return wait_for_stable(
            read,
            timeout_s=self.config.propagation_timeout_s,
            interval_s=self.config.propagation_interval_s,
            cancel=self.runtime.cancel,
        )

    def _merged_service(self, resource_id: ResourceId, name: str) -> ServiceRecord:
        return ServiceRecord(
            name=name,
            namespace=resource_id.namespace,
            selector={MERGE_LABEL: "true"},
            ports=[ServicePort(port=self.config.merged_service_port, target_port=self.config.target_port)],
        )

    def _original_service(self, resource_id: ResourceId, svc: str, port: int, selector: dict[str, str]) -> ServiceRecord:
        return ServiceRecord(
            name=svc,
            namespace=resource_id.namespace,
            selector=dict(selector),
            ports=[ServicePort(port=port, target_port=self.config.target_port)],
        )

    def _ensure_service(self, service: ServiceRecord) -> None:
        try:
            self.store.create(service)
        except AlreadyExists:
            return
        db.log_event("INFO", f"Created service {service.name}", resource=f"{service.namespace}/{service.name}")

    def _delete_if_exists(self, resource_id: ResourceId, name: str) -> None:
        try:
            self.store.delete(KIND_SERVICE, resource_id.namespace, name)
        except NotFound:
            return
        db.log_event("INFO", f"Deleted service {name}", resource=resource_id, service=name)

    def _state_for_status(self, resource_id: ResourceId) -> MergeState | None:
        try:
            return db.load_state(resource_id)
        except sqlite3.Error:
            # Status then carries only the error fields.
            return None

    def _write_status(self, resource: MergeResource | None, state: MergeState | None, error: MergeError | None) -> None:
        if resource is None:
            return
        now = db.utc_now()
        status = dict(resource.status)
        status["lastReconcileTime"] = now
        if state is not None:
            status.update(
                {
                    "phase": "Active" if state.active else "Inactive",
                    "mergedServices": sorted(state.services),
                    "mergedServiceName": state.merged_service_name,
                }
            )
        if error is None:
            status.update({"lastError": None, "lastErrorDetail": None})
        else:
            status.update({"lastError": error.kind, "lastErrorDetail": str(error), "lastErrorTime": now})
        resource.status = status
        try:
            self.store.update(resource)
        except StoreError as e:
            db.log_event("WARN", f"Could not write status: {type(e).__name__}: {e}", resource=resource.resource_id)
