from __future__ import annotations

import time
from threading import Event
from typing import Callable

from .errors import PropagationCancelled, PropagationTimeout


def wait_for_stable(
    read: Callable[[], set[str]],
    timeout_s: float,
    interval_s: float,
    cancel: Event | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] | None = None,
) -> set[str]:
    """Poll `read` until two consecutive results are equal and return that set.

    Raises PropagationTimeout once `timeout_s` has elapsed without two matching
    reads, and PropagationCancelled as soon as `cancel` is set.
    """
    if sleep is None:
        sleep = cancel.wait if cancel is not None else time.sleep

    deadline = clock() + max(0.0, timeout_s)
    previous = read()
    while True:
        if cancel is not None and cancel.is_set():
            raise PropagationCancelled("Propagation wait cancelled")
        sleep(max(0.0, interval_s))
        if cancel is not None and cancel.is_set():
            raise PropagationCancelled("Propagation wait cancelled")
        current = read()
        if current == previous:
            return current
        if clock() >= deadline:
            raise PropagationTimeout(f"Pods did not settle within {timeout_s:g}s")
        previous = current
