from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from threading import Thread

from . import db
from .errors import Done, FatalError, Outcome, RetryAfter, StoreError
from .lifecycle import MergeLifecycle
from .models import KIND_MERGE, ResourceId
from .settings import Settings, settings
from .store import ObjectStore


class Reconciler:
    """Periodically resyncs every managed resource instance.

    Each tick collects the custom resources in the watched namespace plus any
    instance with persisted merge state (its resource may have been deleted,
    which must trigger a rollback) and reconciles those that are due.
    Distinct instances run concurrently on a small thread pool.
    """

    def __init__(self, store: ObjectStore, lifecycle: MergeLifecycle | None = None, config: Settings = settings):
        self.store = store
        self.config = config
        self.lifecycle = lifecycle or MergeLifecycle(store, config=config)
        self.runtime = self.lifecycle.runtime
        self._pool: ThreadPoolExecutor | None = None
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self.runtime.cancel.clear()
        self._executor()
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self, timeout: float = 5.0) -> None:
        # Also interrupts any propagation wait in flight.
        self.runtime.cancel.set()
        if self._thr is not None:
            self._thr.join(timeout)
            self._thr = None
        if self._pool is not None:
            self._pool.shutdown(wait=False)
            self._pool = None

    def _executor(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(max_workers=max(1, int(self.config.workers)), thread_name_prefix="smr")
        return self._pool

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self.runtime.cancel.is_set():
            try:
                self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
            self.runtime.cancel.wait(max(1, self.config.poll_interval_s))
        db.log_event("INFO", "Reconciler stopped")

    def managed_resources(self) -> list[ResourceId]:
        ids: set[ResourceId] = set()
        try:
            for res in self.store.list(KIND_MERGE, self.config.namespace):
                ids.add(res.resource_id)
        except StoreError as e:
            db.log_event("WARN", f"Could not list merge resources: {type(e).__name__}: {e}")
        for row in db.list_states(active_only=True):
            ids.add(ResourceId.parse(row.resource_id))
        return sorted(ids, key=lambda r: r.key)

    def tick(self) -> dict[str, Outcome]:
        due = [rid for rid in self.managed_resources() if self.runtime.is_due(rid.key)]
        pool = self._executor()
        futures = {rid: pool.submit(self.reconcile_one, rid) for rid in due}
        outcomes: dict[str, Outcome] = {}
        for rid, f in futures.items():
            try:
                outcomes[rid.key] = f.result()
            except Exception as e:
                detail = f"{type(e).__name__}: {e}"
                db.log_event("ERROR", f"Reconcile failed: {detail}", resource=rid)
                self.runtime.schedule(rid.key, self.config.poll_interval_s)
                outcomes[rid.key] = FatalError(detail)
        return outcomes

    def reconcile_one(self, resource_id: ResourceId) -> Outcome:
        outcome = self.lifecycle.reconcile(resource_id)
        if isinstance(outcome, RetryAfter):
            self.runtime.schedule(resource_id.key, outcome.seconds)
        elif isinstance(outcome, FatalError):
            # Retried on the normal resync cadence.
            self.runtime.schedule(resource_id.key, self.config.poll_interval_s)
        elif isinstance(outcome, Done):
            self.runtime.forget(resource_id.key)
        return outcome
