from __future__ import annotations

from . import db
from .errors import NotFound
from .models import (
    KIND_DEPLOYMENT,
    MERGE_LABEL,
    ORIGIN_ANNOTATION,
    ORIGIN_LABEL,
    PREVIOUS_ORIGIN_ANNOTATION,
    DeploymentRecord,
    ResourceId,
)
from .store import ObjectStore


class LabelMutator:
    """Idempotent merge/release labelling of deployment pod templates.

    One instance is used per transition pass: a deployment is touched at most
    once per pass even when several of its pods are visited.

    Merging records on the deployment how it found the `name` label (absent,
    or holding some other value) so that releasing restores the template
    exactly.
    """

    def __init__(self, store: ObjectStore, resource: ResourceId):
        self.store = store
        self.resource = resource
        self.merged: set[str] = set()
        self.released: set[str] = set()
        self.writes = 0

    def _fetch(self, name: str) -> DeploymentRecord | None:
        try:
            return self.store.get(KIND_DEPLOYMENT, self.resource.namespace, name)
        except NotFound:
            # Deleted since its pod was listed.
            db.log_event("WARN", f"Deployment {name} vanished; skipping", resource=self.resource)
            return None

    def ensure_merged(self, deployment: str, origin_service: str) -> bool:
        """Label a deployment's pod template for the merge. Returns True if a write was issued."""
        if deployment in self.merged:
            return False
        self.merged.add(deployment)

        dep = self._fetch(deployment)
        if dep is None:
            return False

        labels = dict(dep.template_labels)
        if labels.get(MERGE_LABEL) == "true" and labels.get(ORIGIN_LABEL) == origin_service:
            return False

        annotations = dict(dep.annotations)
        # Only the first merge records the original; later ones see our own label.
        untouched = ORIGIN_ANNOTATION not in annotations and PREVIOUS_ORIGIN_ANNOTATION not in annotations
        if untouched and ORIGIN_LABEL not in labels:
            annotations[ORIGIN_ANNOTATION] = "added"
        elif untouched and labels[ORIGIN_LABEL] != origin_service:
            annotations[PREVIOUS_ORIGIN_ANNOTATION] = labels[ORIGIN_LABEL]
        dep.annotations = annotations
        labels[MERGE_LABEL] = "true"
        labels[ORIGIN_LABEL] = origin_service
        dep.template_labels = labels
        self.store.update(dep)
        self.writes += 1
        db.log_event("INFO", f"Labelled deployment {deployment} for merge", resource=self.resource, service=origin_service)
        return True

    def ensure_released(self, deployment: str) -> bool:
        """Remove the merge marker and restore the original `name` label. Returns True if a write was issued."""
        if deployment in self.released:
            return False
        self.released.add(deployment)

        dep = self._fetch(deployment)
        if dep is None:
            return False

        labels = dict(dep.template_labels)
        annotations = dict(dep.annotations)
        changed = labels.pop(MERGE_LABEL, None) is not None
        if annotations.pop(ORIGIN_ANNOTATION, None) is not None:
            labels.pop(ORIGIN_LABEL, None)
            changed = True
        previous = annotations.pop(PREVIOUS_ORIGIN_ANNOTATION, None)
        if previous is not None:
            labels[ORIGIN_LABEL] = previous
            changed = True
        if not changed:
            return False

        dep.template_labels = labels
        dep.annotations = annotations
        self.store.update(dep)
        self.writes += 1
        db.log_event("INFO", f"Released deployment {deployment} from merge", resource=self.resource)
        return True
