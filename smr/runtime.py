from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Iterator

from .db import utc_now


@dataclass
class LastOutcome:
    resource: str
    outcome: str  # done|retry|fatal|busy
    detail: str
    at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory coordination for reconcile calls in this process.

    Nothing here is needed to recover merge state; that lives in the database.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self.cancel = Event()
        self._leases: dict[str, Lock] = {}  # resource -> exclusive lease
        self._failures: dict[str, int] = {}  # resource -> consecutive store failures
        self._next_due: dict[str, float] = {}  # resource -> monotonic time
        self.outcomes: dict[str, LastOutcome] = {}

    def _lease_lock(self, resource: str) -> Lock:
        with self.lock:
            lk = self._leases.get(resource)
            if lk is None:
                lk = self._leases[resource] = Lock()
            return lk

    @contextmanager
    def lease(self, resource: str) -> Iterator[bool]:
        """Try to take the exclusive lease for one resource instance.

        Yields False (without blocking) if another transition holds it.
        """
        lk = self._lease_lock(resource)
        acquired = lk.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lk.release()

    def record_store_failure(self, resource: str) -> int:
        with self.lock:
            n = self._failures.get(resource, 0)
            self._failures[resource] = n + 1
            return n

    def reset_failures(self, resource: str) -> None:
        with self.lock:
            self._failures.pop(resource, None)

    def schedule(self, resource: str, delay_s: float) -> None:
        with self.lock:
            self._next_due[resource] = time.monotonic() + max(0.0, delay_s)

    def is_due(self, resource: str) -> bool:
        with self.lock:
            return time.monotonic() >= self._next_due.get(resource, 0.0)

    def forget(self, resource: str) -> None:
        with self.lock:
            self._next_due.pop(resource, None)
            self._failures.pop(resource, None)

    def set_outcome(self, st: LastOutcome) -> None:
        with self.lock:
            self.outcomes[st.resource] = st

    def list_outcomes(self) -> list[LastOutcome]:
        with self.lock:
            return list(self.outcomes.values())
