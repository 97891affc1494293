"""
Issue Application Layer
=======================

Application layer for the issue lifecycle module.

Contains:
- Services: Orchestrate business logic and coordinate with repositories
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from civictrack.issues.application.dto import (
    LocationDTO,
    IssueCreateRequest,
    TransitionRequest,
    FeedbackRequest,
    UpvoteRequest,
    PriorityOverrideRequest,
    EscalateRequest,
    SweepRequest,
    IssueResponse,
    HistoryRecordResponse,
    SweepResponse,
    SLADashboardResponse,
    HealthResponse,
)
from civictrack.issues.application.services import (
    IssueLifecycleService,
    EngagementService,
    FeedbackService,
    EscalationService,
    IIssueRepository,
    IStateHistoryRepository,
    ISLAConfigProvider,
    IEscalationNotifier,
    IUnitOfWork,
    ensure_utc,
    utc_now,
)

__all__ = [
    # DTOs
    "LocationDTO",
    "IssueCreateRequest",
    "TransitionRequest",
    "FeedbackRequest",
    "UpvoteRequest",
    "PriorityOverrideRequest",
    "EscalateRequest",
    "SweepRequest",
    "IssueResponse",
    "HistoryRecordResponse",
    "SweepResponse",
    "SLADashboardResponse",
    "HealthResponse",
    # Services
    "IssueLifecycleService",
    "EngagementService",
    "FeedbackService",
    "EscalationService",
    # Repository Interfaces
    "IIssueRepository",
    "IStateHistoryRepository",
    "ISLAConfigProvider",
    "IEscalationNotifier",
    "IUnitOfWork",
    "ensure_utc",
    "utc_now",
]
