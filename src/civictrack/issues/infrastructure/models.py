"""
Issue Infrastructure Models
===========================

SQLAlchemy ORM models for the issue module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean, Float, ForeignKey, Index, Integer, String, Text, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from civictrack.config import IssueStatus, Priority
from civictrack.infrastructure.database import Base, UTCDateTime


class IssueModel(Base):
    """
    Database model for Issue entity.

    Maps to the 'issues' table. Escalation history and upvoters live in
    child tables; everything else is embedded on the row.
    """
    __tablename__ = "issues"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Human-readable sequential code (R00001)
    report_number: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    report_code: Mapped[str] = mapped_column(String(16), unique=True, index=True, nullable=False)

    # Descriptive
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    subcategory: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    ward: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    zone: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Location
    address: Mapped[str] = mapped_column(String(500), nullable=False)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    pincode: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Ownership
    reporter_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    assignee_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    department: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Workflow
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=IssueStatus.PENDING.value, index=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default=Priority.MEDIUM.value)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority_overridden_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    priority_overridden_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # SLA
    deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    penalty_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_escalated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolution_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Engagement (count is maintained in the same transaction as issue_upvotes)
    upvotes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Feedback (one-shot)
    feedback_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    feedback_comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    feedback_is_resolved: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    feedback_submitted_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    feedback_submitted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    due_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Optimistic concurrency
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    upvoters: Mapped[List["IssueUpvoteModel"]] = relationship(
        lazy="selectin",
        order_by="IssueUpvoteModel.created_at",
    )
    escalations: Mapped[List["EscalationModel"]] = relationship(
        lazy="selectin",
        order_by="EscalationModel.level",
    )


class IssueUpvoteModel(Base):
    """
    Set membership of citizens who upvoted an issue.

    The composite primary key makes (issue, citizen) unique, which is what
    keeps upvotes deduplicated under concurrent requests.
    """
    __tablename__ = "issue_upvotes"

    issue_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("issues.id"), primary_key=True)
    citizen_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class EscalationModel(Base):
    """
    Escalation history entry.

    Maps to the 'issue_escalations' table. Append-only.
    """
    __tablename__ = "issue_escalations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    issue_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("issues.id"), nullable=False, index=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    escalated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    target: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)


class StateHistoryModel(Base):
    """
    Status audit trail.

    Maps to the 'state_history' table. Rows are inserted once and never
    updated; the integer id preserves insertion order within a timestamp.
    """
    __tablename__ = "state_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    issue_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("issues.id"), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    changed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")

    __table_args__ = (
        Index("ix_state_history_issue_timestamp", "issue_id", "timestamp"),
    )
