from datetime import datetime, timezone
from enum import Enum
from typing import Any, FrozenSet, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from resource_reconciler.errors import WaitSpecError

# Status label of the synthetic snapshot produced when a resource is gone
ABSENT_STATUS = ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotFoundPolicy(str, Enum):
    success = "success"
    failure = "failure"
    continue_polling = "continue_polling"


class ErrorKind(str, Enum):
    not_found = "not_found"
    transient = "transient"
    fatal = "fatal"


class ResourceHandle(BaseModel):
    """Lookup key of one remote resource, optionally nested under a parent"""

    model_config = ConfigDict(frozen=True)

    id: str
    parent_id: Optional[str] = None

    def __str__(self) -> str:
        if self.parent_id is None:
            return self.id
        return f"{self.parent_id}/{self.id}"


class StatusSnapshot(BaseModel):
    status: str
    raw_response: Any = None
    observed_at: datetime = Field(default_factory=_utcnow)
    elapsed_time: float = 0.0
    absent: bool = False

    @classmethod
    def absent_snapshot(cls, elapsed_time: float = 0.0) -> "StatusSnapshot":
        return cls(status=ABSENT_STATUS, elapsed_time=elapsed_time, absent=True)


class Found(BaseModel):
    kind: Literal["found"] = "found"
    snapshot: StatusSnapshot


class NotFound(BaseModel):
    kind: Literal["not_found"] = "not_found"


class PollError(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: Literal["error"] = "error"
    error: Exception


PollResult = Union[Found, NotFound, PollError]


class WaitSpec(BaseModel):
    """What a single wait is waiting for, and how patiently.

    ``timeout`` is measured from the first probe. ``max_polls`` optionally
    bounds the wait by probe count as well; whichever limit is hit first ends
    the wait. With an empty ``pending`` set every non-target status is treated
    as pending.
    """

    model_config = ConfigDict(frozen=True)

    target: FrozenSet[str]
    pending: FrozenSet[str] = frozenset()
    timeout: float = 300.0  # 5 minutes
    max_polls: Optional[int] = None
    initial_delay: float = 0.0
    min_delay: float = 1.0
    max_delay: float = 32.0
    backoff_factor: float = 2.0
    not_found_policy: NotFoundPolicy = NotFoundPolicy.failure
    not_found_checks: Optional[int] = None
    target_occurrences: int = 1
    treat_unknown_as_pending: bool = False

    @model_validator(mode="after")
    def _check_consistency(self) -> "WaitSpec":
        if not self.target:
            raise WaitSpecError("target status set must not be empty")
        overlap = self.target & self.pending
        if overlap:
            raise WaitSpecError(
                f"statuses {sorted(overlap)} are both target and pending"
            )
        if self.timeout <= 0:
            raise WaitSpecError(f"timeout must be positive, got {self.timeout}")
        if self.max_polls is not None and self.max_polls < 1:
            raise WaitSpecError(f"max_polls must be at least 1, got {self.max_polls}")
        if self.min_delay < 0 or self.initial_delay < 0:
            raise WaitSpecError("delays must not be negative")
        if self.max_delay < self.min_delay:
            raise WaitSpecError(
                f"max_delay {self.max_delay} is below min_delay {self.min_delay}"
            )
        if self.backoff_factor < 1:
            raise WaitSpecError(
                f"backoff_factor must be at least 1, got {self.backoff_factor}"
            )
        if self.target_occurrences < 1:
            raise WaitSpecError("target_occurrences must be at least 1")
        if self.not_found_checks is not None and self.not_found_checks < 1:
            raise WaitSpecError("not_found_checks must be at least 1")
        return self

    def is_pending(self, status: str) -> bool:
        if status in self.pending:
            return True
        return self.treat_unknown_as_pending or not self.pending

    def expected_statuses(self) -> FrozenSet[str]:
        return self.target | self.pending


class LifecycleConfig(BaseModel):
    """Timeouts and poll pacing used by the lifecycle handlers"""

    create_timeout: float = 600.0  # 10 minutes
    update_timeout: float = 600.0
    delete_timeout: float = 600.0
    min_delay: float = 1.0
    max_delay: float = 32.0
    backoff_factor: float = 2.0
    # Number of consecutive 404s tolerated right after a create
    not_found_checks: Optional[int] = 20
