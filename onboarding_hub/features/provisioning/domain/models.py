"""
Domain models for the provisioning feature.

Roster snapshots are immutable pydantic models; the small result types
produced by the engine are slotted dataclasses.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

RosterCategory = Literal["preboarding", "completed"]

PREBOARDING: RosterCategory = "preboarding"
COMPLETED: RosterCategory = "completed"

UNKNOWN_LOCATION = "Unknown"


class RosterRecord(BaseModel):
    """One incoming hire as returned by the HR roster for a single poll."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    phone: str = ""
    location: str = UNKNOWN_LOCATION
    location_id: str | None = None
    employee_type_id: str = ""
    employee_type: str = "unknown"
    is_intern: bool = False
    onboarding_status: str = PREBOARDING
    onboarding_date: date | None = None
    work_email: str = ""
    email_task_status: str = "unknown"

    @property
    def has_email(self) -> bool:
        return self.email_task_status == "completed" or bool(self.work_email)


class EnrichedRecord(RosterRecord):
    """Roster record plus the suggestions shown on cards."""

    suggested_email: str | None = None
    email_error: str | None = None
    suggested_rule_id: str | None = None
    suggested_rule_name: str | None = None

    @classmethod
    def from_record(cls, record: RosterRecord, **suggestions: Any) -> "EnrichedRecord":
        data = record.model_dump()
        data.update(suggestions)
        return cls(**data)


class RideRule(BaseModel):
    """A ride-service usage policy an account can be attached to."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: str = ""
    active: bool = True
    is_default: bool = False
    city_code: str | None = None
    description: str = ""


class CommitStatus(str, Enum):
    SUCCESS = "success"
    DUPLICATE_CONFLICT = "duplicate_conflict"
    ERROR = "error"


@dataclass(slots=True)
class CommitResult:
    """Outcome of writing a work email onto a roster record."""

    status: CommitStatus
    message: str | None = None

    @classmethod
    def ok(cls) -> "CommitResult":
        return cls(CommitStatus.SUCCESS)

    @classmethod
    def duplicate(cls, message: str | None = None) -> "CommitResult":
        return cls(CommitStatus.DUPLICATE_CONFLICT, message)

    @classmethod
    def failed(cls, message: str) -> "CommitResult":
        return cls(CommitStatus.ERROR, message)


@dataclass(slots=True)
class AllocationResult:
    """A committed work email and how many writes it took."""

    email: str
    suffix: int | None
    attempts: int


@dataclass(slots=True)
class RideProvisionResult:
    success: bool
    already_exists: bool = False
    member_id: str | None = None


@dataclass(slots=True)
class ItemResult:
    """One row of a provisioning result card."""

    name: str
    success: bool
    record_id: str | None = None
    email: str | None = None
    attempts: int = 0
    rule_name: str | None = None
    already_exists: bool = False
    error: str | None = None


@dataclass(slots=True)
class BatchOutcome:
    kind: str
    results: list[ItemResult]

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.successful


@dataclass(slots=True)
class SentNotification:
    records: list[EnrichedRecord]
    sent_at: datetime
    category: RosterCategory = PREBOARDING


@dataclass(slots=True)
class RefreshResult:
    """What a refresh re-sent, and how much of the stale card is already done."""

    pending: int
    resolved_from_card: int | None = None


@dataclass(slots=True)
class CategoryReport:
    """What one poll did for one roster category."""

    sent: bool = False
    count: int = 0
    reason: str | None = None
    groups_sent: list[str] = field(default_factory=list)
    groups_skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "count": self.count,
            "reason": self.reason,
            "groups_sent": list(self.groups_sent),
            "groups_skipped": list(self.groups_skipped),
        }


@dataclass(slots=True)
class CheckSummary:
    email: CategoryReport
    ride: CategoryReport
    error: str | None = None

    @property
    def sent(self) -> bool:
        return self.email.sent or self.ride.sent

    @property
    def count(self) -> int:
        return self.email.count + self.ride.count

    def to_dict(self) -> dict:
        data = {
            "sent": self.sent,
            "count": self.count,
            "email": self.email.to_dict(),
            "ride": self.ride.to_dict(),
        }
        if self.error:
            data["error"] = self.error
        return data
