"""
Issue Domain Layer
==================

Domain layer for the issue lifecycle module.

Contains:
- Entities: Core business objects with identity (Issue, StateHistoryRecord)
- Value Objects: Immutable objects defined by attributes (SLAConfig, SLAProjection)
- Domain Services: Stateless business logic (DeadlineCalculator, EscalationPolicy, IssueWorkflow)

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from civictrack.issues.domain.entities import (
    Issue,
    Location,
    StateHistoryRecord,
    EscalationRecord,
    Feedback,
)
from civictrack.issues.domain.value_objects import (
    DeadlineCalculator,
    EscalationPolicy,
    SLAConfig,
    EscalationLevelConfig,
    SLAProjection,
)
from civictrack.issues.domain.workflow import Initiator, IssueWorkflow, TRANSITIONS

__all__ = [
    # Entities
    "Issue",
    "Location",
    "StateHistoryRecord",
    "EscalationRecord",
    "Feedback",
    # Value Objects & Services
    "DeadlineCalculator",
    "EscalationPolicy",
    "SLAConfig",
    "EscalationLevelConfig",
    "SLAProjection",
    "Initiator",
    "IssueWorkflow",
    "TRANSITIONS",
]
