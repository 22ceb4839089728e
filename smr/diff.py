from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class MergeDiff:
    to_release: list[str]
    to_absorb: list[str]

    @property
    def empty(self) -> bool:
        return not self.to_release and not self.to_absorb


def diff(old: Iterable[str], new: Iterable[str]) -> MergeDiff:
    """Services to release (old - new) and to absorb (new - old).

    Services in both sets appear in neither list. Output is sorted so callers
    process services in a stable order.
    """
    old_set, new_set = set(old), set(new)
    return MergeDiff(to_release=sorted(old_set - new_set), to_absorb=sorted(new_set - old_set))
