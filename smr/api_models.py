from __future__ import annotations

from pydantic import BaseModel, Field

from .errors import Done, FatalError, Outcome, RetryAfter
from .models import MergeState


class MergeStateOut(BaseModel):
    resource: str = Field(..., description="namespace/name of the SvcMergerObj")
    active: bool
    services: list[str] = Field(default_factory=list)
    port_by_service: dict[str, int] = Field(default_factory=dict)
    merged_pod_ids: list[str] = Field(default_factory=list)
    merged_service_name: str = ""
    selector_by_service: dict[str, dict[str, str]] = Field(default_factory=dict)
    updated_at: str | None = None

    @classmethod
    def from_state(cls, resource: str, state: MergeState, updated_at: str | None = None) -> "MergeStateOut":
        return cls(resource=resource, updated_at=updated_at, **state.to_dict())


class OutcomeOut(BaseModel):
    resource: str
    outcome: str = Field(..., description="done|retry|fatal")
    retry_after_s: float | None = None
    detail: str = ""

    @classmethod
    def from_outcome(cls, resource: str, outcome: Outcome) -> "OutcomeOut":
        if isinstance(outcome, RetryAfter):
            return cls(resource=resource, outcome="retry", retry_after_s=outcome.seconds, detail=outcome.reason)
        if isinstance(outcome, FatalError):
            return cls(resource=resource, outcome="fatal", detail=outcome.detail)
        assert isinstance(outcome, Done)
        return cls(resource=resource, outcome="done")
