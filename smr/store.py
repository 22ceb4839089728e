from __future__ import annotations

from typing import Any, Protocol


class ObjectStore(Protocol):
    """Typed access to cluster objects.

    Implementations raise `NotFound`, `AlreadyExists`, `Conflict` or
    `StoreUnavailable` from `smr.errors`; they never retry on their own.
    """

    def get(self, kind: str, namespace: str, name: str) -> Any: ...

    def list(self, kind: str, namespace: str, selector: dict[str, str] | None = None) -> list[Any]: ...

    def create(self, obj: Any) -> Any: ...

    def update(self, obj: Any) -> Any: ...

    def delete(self, kind: str, namespace: str, name: str) -> None: ...


def matches(labels: dict[str, str], selector: dict[str, str] | None) -> bool:
    """Equality-based label selector match; an empty selector matches everything."""
    if not selector:
        return True
    return all(labels.get(k) == v for k, v in selector.items())


def selector_string(selector: dict[str, str] | None) -> str | None:
    if not selector:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
