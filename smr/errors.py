from __future__ import annotations

from dataclasses import dataclass


# --- Object store failures -------------------------------------------------


class StoreError(Exception):
    """Base class for failures reported by an object store."""


class NotFound(StoreError):
    def __init__(self, kind: str, namespace: str, name: str):
        super().__init__(f"{kind} {namespace}/{name} not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class AlreadyExists(StoreError):
    def __init__(self, kind: str, namespace: str, name: str):
        super().__init__(f"{kind} {namespace}/{name} already exists")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class Conflict(StoreError):
    pass


class StoreUnavailable(StoreError):
    pass


# --- Transition failures ---------------------------------------------------


class MergeError(Exception):
    """A failure that aborts the current merge transition.

    `kind` is the name written to the resource status so an operator can tell
    "still converging" apart from "stuck".
    """

    kind = "MergeError"
    retryable = True


class NotFoundTransient(MergeError):
    kind = "NotFoundTransient"


class NotFoundFatal(MergeError):
    kind = "NotFoundFatal"
    retryable = False


class InvalidIntent(MergeError):
    kind = "InvalidIntent"
    retryable = False


class ConflictOnWrite(MergeError):
    kind = "ConflictOnWrite"


class PropagationTimeout(MergeError):
    kind = "PropagationTimeout"


class PropagationCancelled(MergeError):
    kind = "PropagationCancelled"


class StoreUnavailableError(MergeError):
    kind = "StoreUnavailable"


class InternalError(MergeError):
    """An unexpected failure inside the controller itself."""

    kind = "Internal"
    retryable = False


# --- Reconcile outcomes ----------------------------------------------------


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class RetryAfter:
    seconds: float
    reason: str = ""


@dataclass(frozen=True)
class FatalError:
    detail: str


Outcome = Done | RetryAfter | FatalError
