"""
Issue Domain Entities
=====================

Pure Python domain entities for the issue lifecycle.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, List, Optional

from civictrack.config import (
    IssueCategory,
    IssueStatus,
    MAX_ESCALATION_LEVEL,
    MIN_ESCALATION_LEVEL,
    Priority,
)
from civictrack.issues.domain.value_objects import DeadlineCalculator, SLAProjection
from civictrack.issues.domain.workflow import Initiator, IssueWorkflow


@dataclass(frozen=True)
class Location:
    """Where the issue was reported."""
    address: str
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def __post_init__(self):
        if not self.address or not self.address.strip():
            raise ValueError("address is required")
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        if self.latitude is not None and not -90 <= self.latitude <= 90:
            raise ValueError("latitude out of range")
        if self.longitude is not None and not -180 <= self.longitude <= 180:
            raise ValueError("longitude out of range")


@dataclass(frozen=True)
class StateHistoryRecord:
    """One entry of the append-only status audit trail."""
    issue_id: str
    from_status: Optional[IssueStatus]
    to_status: IssueStatus
    timestamp: datetime
    changed_by: Optional[str] = None
    notes: str = ""
    id: Optional[str] = None


@dataclass(frozen=True)
class EscalationRecord:
    """One entry of an issue's escalation history."""
    level: int
    escalated_at: datetime
    target: str
    reason: str


@dataclass(frozen=True)
class Feedback:
    """Citizen rating of a resolved issue. At most one per issue."""
    rating: int
    comment: str
    is_resolved: bool
    submitted_by: str
    submitted_at: datetime


@dataclass
class Issue:
    """
    Issue entity representing a civic report.

    Owns its SLA, engagement and feedback state. Time-dependent SLA values
    are derived through `sla(now)` and never stored.
    """

    # Identity
    id: str
    report_code: str

    # Descriptive
    title: str
    description: str
    category: IssueCategory
    priority: Priority
    location: Location

    # Ownership
    reporter_id: str
    department: str

    # Timestamps
    created_at: datetime
    updated_at: datetime
    due_time: datetime

    # SLA
    deadline: datetime

    status: IssueStatus = IssueStatus.PENDING
    subcategory: Optional[str] = None
    ward: Optional[str] = None
    zone: Optional[str] = None
    assignee_id: Optional[str] = None
    rejection_reason: Optional[str] = None

    escalation_level: int = MIN_ESCALATION_LEVEL
    escalation_history: List[EscalationRecord] = field(default_factory=list)
    penalty_points: int = 0
    last_escalated_at: Optional[datetime] = None

    # Engagement
    upvotes: int = 0
    upvoted_by: FrozenSet[str] = field(default_factory=frozenset)

    feedback: Optional[Feedback] = None
    resolution_time: Optional[int] = None

    priority_overridden_by: Optional[str] = None
    priority_overridden_at: Optional[datetime] = None

    version: int = 1

    def __post_init__(self):
        """Validate issue on initialization."""
        if self.updated_at < self.created_at:
            raise ValueError("updated_at cannot be before created_at")
        if not MIN_ESCALATION_LEVEL <= self.escalation_level <= MAX_ESCALATION_LEVEL:
            raise ValueError("escalation_level out of range")
        if self.upvotes != len(self.upvoted_by):
            raise ValueError("upvotes must equal the number of distinct upvoters")

    # ========== Derived SLA state ==========

    def sla(self, now: datetime) -> SLAProjection:
        return SLAProjection.at(self.deadline, now)

    def hours_remaining(self, now: datetime) -> int:
        return DeadlineCalculator.hours_remaining(self.deadline, now)

    def is_overdue(self, now: datetime) -> bool:
        return DeadlineCalculator.is_overdue(self.deadline, now)

    @property
    def is_active(self) -> bool:
        """Check if issue is still in the working set."""
        return self.status not in (IssueStatus.RESOLVED, IssueStatus.REJECTED)

    @property
    def has_feedback(self) -> bool:
        return self.feedback is not None

    # ========== Behaviour ==========

    def apply_transition(
        self,
        new_status: IssueStatus,
        now: datetime,
        actor_id: Optional[str] = None,
        notes: str = "",
        initiator: Initiator = Initiator.STAFF,
        assignee_id: Optional[str] = None
    ) -> StateHistoryRecord:
        """
        Validate and apply a status change, returning its history record.

        The caller is responsible for persisting both atomically.
        """
        new_status = IssueStatus(new_status)
        IssueWorkflow.validate(self.status, new_status, initiator)

        previous = self.status
        self.status = new_status

        if new_status == IssueStatus.RESOLVED and self.resolution_time is None:
            self.resolution_time = DeadlineCalculator.resolution_hours(self.created_at, now)
        if new_status == IssueStatus.ASSIGNED and assignee_id:
            self.assignee_id = assignee_id
        if new_status == IssueStatus.REJECTED and notes:
            self.rejection_reason = notes

        self.updated_at = now

        return StateHistoryRecord(
            issue_id=self.id,
            from_status=previous,
            to_status=new_status,
            timestamp=now,
            changed_by=actor_id,
            notes=notes or "",
        )

    def record_feedback(self, feedback: Feedback) -> None:
        if self.feedback is not None:
            raise ValueError("feedback already recorded")
        self.feedback = feedback
        self.updated_at = feedback.submitted_at
