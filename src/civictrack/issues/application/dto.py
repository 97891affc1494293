"""
Issue Application DTOs
======================

Data Transfer Objects for the issue API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses. Time-dependent SLA fields are computed at
response time and never read from storage.
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import List, Optional, Literal
from datetime import datetime

from civictrack.issues.domain import Issue, StateHistoryRecord


# ========== Type Aliases for Literals ==========
PriorityStr = Literal["low", "medium", "high", "urgent"]
IssueStatusStr = Literal["pending", "assigned", "in-progress", "resolved", "rejected", "reopened", "escalated"]
CategoryStr = Literal[
    "roads-infrastructure", "street-lighting", "waste-management", "water-drainage",
    "parks-public-spaces", "traffic-signage", "public-health-safety", "other",
]


# ========== Request DTOs ==========

class LocationDTO(BaseModel):
    """Where the issue is."""
    address: str = Field(..., min_length=1)
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)

    @model_validator(mode="after")
    def validate_coordinates(self) -> "LocationDTO":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        return self


class IssueCreateRequest(BaseModel):
    """Request model for reporting an issue."""
    title: str = Field(..., min_length=1, max_length=500)
    description: str = Field(..., min_length=1)
    category: CategoryStr
    subcategory: Optional[str] = None
    priority: Optional[PriorityStr] = Field(None, description="Defaults to medium")
    department: str = Field(..., min_length=1)
    reporter_id: str = Field(..., min_length=1)
    location: LocationDTO
    ward: Optional[str] = None
    zone: Optional[str] = None

    @field_validator("title", "description", "department")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class TransitionRequest(BaseModel):
    """Staff request to move an issue to another status."""
    status: IssueStatusStr
    actor_id: str = Field(..., min_length=1)
    notes: str = ""
    assignee_id: Optional[str] = None
    expected_version: Optional[int] = Field(None, ge=1)


class FeedbackRequest(BaseModel):
    """Citizen rating of a resolved issue. Range is checked by the service."""
    citizen_id: str = Field(..., min_length=1)
    rating: int
    comment: Optional[str] = None
    is_resolved: bool = True


class UpvoteRequest(BaseModel):
    citizen_id: str = Field(..., min_length=1)


class PriorityOverrideRequest(BaseModel):
    """Administrative priority change. Does not move the deadline."""
    priority: PriorityStr
    actor_id: str = Field(..., min_length=1)
    reason: Optional[str] = None
    expected_version: Optional[int] = Field(None, ge=1)


class EscalateRequest(BaseModel):
    issue_id: str = Field(..., min_length=1)
    reason: Optional[str] = None
    actor_id: Optional[str] = None


class SweepRequest(BaseModel):
    """Optional evaluation time; defaults to the server clock."""
    now: Optional[datetime] = None


# ========== Response DTOs ==========

class EscalationRecordResponse(BaseModel):
    level: int
    escalated_at: datetime
    target: str
    reason: str


class FeedbackResponse(BaseModel):
    rating: int
    comment: str
    is_resolved: bool
    submitted_by: str
    submitted_at: datetime


class IssueResponse(BaseModel):
    """Response model for an issue with its SLA state at response time."""
    id: str
    report_code: str
    title: str
    description: str
    category: str
    subcategory: Optional[str] = None
    priority: PriorityStr
    status: IssueStatusStr
    department: str
    ward: Optional[str] = None
    zone: Optional[str] = None
    location: LocationDTO
    reporter_id: str
    assignee_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    due_time: datetime

    # SLA information
    deadline: datetime
    hours_remaining: int = Field(..., description="Negative once overdue")
    is_overdue: bool
    escalation_level: int
    escalation_history: List[EscalationRecordResponse] = Field(default_factory=list)
    penalty_points: int
    resolution_time: Optional[int] = Field(None, description="Whole hours from creation to first resolution")

    # Engagement
    upvotes: int
    upvoted_by: List[str] = Field(default_factory=list)
    feedback: Optional[FeedbackResponse] = None

    priority_overridden_by: Optional[str] = None
    priority_overridden_at: Optional[datetime] = None
    version: int

    @classmethod
    def from_domain(cls, issue: Issue, now: datetime) -> "IssueResponse":
        sla = issue.sla(now)
        loc = issue.location
        return cls(
            id=issue.id,
            report_code=issue.report_code,
            title=issue.title,
            description=issue.description,
            category=issue.category.value,
            subcategory=issue.subcategory,
            priority=issue.priority.value,
            status=issue.status.value,
            department=issue.department,
            ward=issue.ward,
            zone=issue.zone,
            location=LocationDTO(
                address=loc.address,
                city=loc.city,
                state=loc.state,
                pincode=loc.pincode,
                latitude=loc.latitude,
                longitude=loc.longitude,
            ),
            reporter_id=issue.reporter_id,
            assignee_id=issue.assignee_id,
            rejection_reason=issue.rejection_reason,
            created_at=issue.created_at,
            updated_at=issue.updated_at,
            due_time=issue.due_time,
            deadline=issue.deadline,
            hours_remaining=sla.hours_remaining,
            is_overdue=sla.is_overdue,
            escalation_level=issue.escalation_level,
            escalation_history=[
                EscalationRecordResponse(
                    level=e.level, escalated_at=e.escalated_at, target=e.target, reason=e.reason
                )
                for e in issue.escalation_history
            ],
            penalty_points=issue.penalty_points,
            resolution_time=issue.resolution_time,
            upvotes=issue.upvotes,
            upvoted_by=sorted(issue.upvoted_by),
            feedback=FeedbackResponse(
                rating=issue.feedback.rating,
                comment=issue.feedback.comment,
                is_resolved=issue.feedback.is_resolved,
                submitted_by=issue.feedback.submitted_by,
                submitted_at=issue.feedback.submitted_at,
            ) if issue.feedback else None,
            priority_overridden_by=issue.priority_overridden_by,
            priority_overridden_at=issue.priority_overridden_at,
            version=issue.version,
        )


class HistoryRecordResponse(BaseModel):
    """One state history entry."""
    id: Optional[str] = None
    issue_id: str
    from_status: Optional[IssueStatusStr] = None
    to_status: IssueStatusStr
    timestamp: datetime
    changed_by: Optional[str] = None
    notes: str = ""

    @classmethod
    def from_domain(cls, record: StateHistoryRecord) -> "HistoryRecordResponse":
        return cls(
            id=record.id,
            issue_id=record.issue_id,
            from_status=record.from_status.value if record.from_status else None,
            to_status=record.to_status.value,
            timestamp=record.timestamp,
            changed_by=record.changed_by,
            notes=record.notes,
        )


class SweepResponse(BaseModel):
    """Response model for an escalation sweep."""
    escalated: List[str] = Field(..., description="Issue IDs escalated in this sweep")
    count: int
    evaluated_at: datetime


class SLADashboardIssue(BaseModel):
    """Issue row on the SLA dashboard."""
    id: str
    report_code: str
    title: str
    priority: PriorityStr
    status: IssueStatusStr
    department: str
    ward: Optional[str] = None
    deadline: datetime
    hours_remaining: int
    is_overdue: bool
    escalation_level: int
    penalty_points: int

    @classmethod
    def from_domain(cls, issue: Issue, now: datetime) -> "SLADashboardIssue":
        sla = issue.sla(now)
        return cls(
            id=issue.id,
            report_code=issue.report_code,
            title=issue.title,
            priority=issue.priority.value,
            status=issue.status.value,
            department=issue.department,
            ward=issue.ward,
            deadline=issue.deadline,
            hours_remaining=sla.hours_remaining,
            is_overdue=sla.is_overdue,
            escalation_level=issue.escalation_level,
            penalty_points=issue.penalty_points,
        )


class SLADashboardSummary(BaseModel):
    """Dashboard summary statistics."""
    total_issues: int
    overdue_issues: int
    due_today: int
    due_tomorrow: int
    sla_compliance_rate: float = Field(..., description="Percent of resolved issues closed within their SLA hours")


class EscalationStats(BaseModel):
    """Escalated issues per level."""
    level1: int = 0
    level2: int = 0
    level3: int = 0


class SLADashboardResponse(BaseModel):
    """Response model for the SLA dashboard."""
    summary: SLADashboardSummary
    escalation_stats: EscalationStats
    issues: List[SLADashboardIssue]


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
