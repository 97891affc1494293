"""
Issue Controllers (API Routes)
==============================

FastAPI routes for the issue lifecycle and SLA escalation endpoints.

Controllers are thin - they delegate to application services. Domain
exceptions propagate to the handlers registered in main.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from civictrack.config import settings
from civictrack.core import ValidationException
from civictrack.infrastructure.database import get_session
from civictrack.issues.application import (
    EngagementService,
    EscalateRequest,
    EscalationService,
    FeedbackRequest,
    HistoryRecordResponse,
    IEscalationNotifier,
    ISLAConfigProvider,
    IssueCreateRequest,
    IssueLifecycleService,
    IssueResponse,
    PriorityOverrideRequest,
    SLADashboardResponse,
    SweepRequest,
    SweepResponse,
    TransitionRequest,
    UpvoteRequest,
    ensure_utc,
    utc_now,
)
from civictrack.issues.application.services import FeedbackService
from civictrack.issues.domain import Location
from civictrack.issues.infrastructure import (
    SQLAlchemyIssueRepository,
    SQLAlchemyStateHistoryRepository,
    SQLAlchemyUnitOfWork,
    YAMLConfigProvider,
)
from civictrack.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

issues_router = APIRouter(prefix="/issues", tags=["Issues"])
sla_router = APIRouter(prefix="/sla", tags=["SLA Escalation"])


# ========== Example payloads for Swagger ==========

ISSUE_CREATE_EXAMPLE = {
    "title": "Pothole near bus stop",
    "description": "Deep pothole on the left lane, two scooters have fallen this week.",
    "category": "roads-infrastructure",
    "priority": "high",
    "department": "Public Works",
    "reporter_id": "citizen-42",
    "ward": "Ward 12",
    "location": {
        "address": "MG Road, opposite City Mall",
        "city": "Pune",
        "latitude": 18.5204,
        "longitude": 73.8567
    }
}


# ========== Dependencies ==========

def get_config_provider(request: Request) -> ISLAConfigProvider:
    """Hot-reloading provider from app state, or a static one from YAML."""
    provider = getattr(request.app.state, "sla_config", None)
    if provider is None:
        provider = YAMLConfigProvider(str(settings.sla_config_path))
    return provider


def get_notifier(request: Request) -> Optional[IEscalationNotifier]:
    return getattr(request.app.state, "notifier", None)


async def get_lifecycle_service(
    session: AsyncSession = Depends(get_session),
    config_provider: ISLAConfigProvider = Depends(get_config_provider)
) -> IssueLifecycleService:
    return IssueLifecycleService(
        SQLAlchemyIssueRepository(session),
        SQLAlchemyStateHistoryRepository(session),
        config_provider,
        SQLAlchemyUnitOfWork(session)
    )


async def get_engagement_service(
    session: AsyncSession = Depends(get_session)
) -> EngagementService:
    return EngagementService(SQLAlchemyIssueRepository(session), SQLAlchemyUnitOfWork(session))


async def get_feedback_service(
    session: AsyncSession = Depends(get_session)
) -> FeedbackService:
    return FeedbackService(
        SQLAlchemyIssueRepository(session),
        SQLAlchemyStateHistoryRepository(session),
        SQLAlchemyUnitOfWork(session)
    )


async def get_escalation_service(
    session: AsyncSession = Depends(get_session),
    config_provider: ISLAConfigProvider = Depends(get_config_provider),
    notifier: Optional[IEscalationNotifier] = Depends(get_notifier)
) -> EscalationService:
    return EscalationService(
        SQLAlchemyIssueRepository(session),
        SQLAlchemyStateHistoryRepository(session),
        config_provider,
        SQLAlchemyUnitOfWork(session),
        notifier
    )


# ========== Issue Routes ==========

@issues_router.post(
    "",
    response_model=IssueResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Report a civic issue",
    description="""
    Create an issue in `pending` with a sequential report code (`R00001`).

    The SLA deadline is fixed at creation from the priority
    (urgent 24h, high 48h, medium 72h, low 120h by default) and is never
    recomputed, not even when the priority is later overridden.
    """,
    responses={201: {"content": {"application/json": {"example": ISSUE_CREATE_EXAMPLE}}}}
)
async def create_issue(
    payload: IssueCreateRequest,
    service: IssueLifecycleService = Depends(get_lifecycle_service)
):
    try:
        location = Location(**payload.location.model_dump())
    except ValueError as e:
        raise ValidationException(str(e))

    issue = await service.create_issue(
        title=payload.title,
        description=payload.description,
        category=payload.category,
        priority=payload.priority,
        department=payload.department,
        reporter_id=payload.reporter_id,
        location=location,
        subcategory=payload.subcategory,
        ward=payload.ward,
        zone=payload.zone,
    )
    return IssueResponse.from_domain(issue, utc_now())


@issues_router.get(
    "/{issue_id}",
    response_model=IssueResponse,
    summary="Get an issue",
    description="`hours_remaining` and `is_overdue` are computed at request time.",
    responses={404: {"description": "Issue not found"}}
)
async def get_issue(
    issue_id: str,
    service: IssueLifecycleService = Depends(get_lifecycle_service)
):
    issue = await service.get_issue(issue_id)
    return IssueResponse.from_domain(issue, utc_now())


@issues_router.get(
    "/{issue_id}/history",
    response_model=List[HistoryRecordResponse],
    summary="Get the status audit trail"
)
async def get_history(
    issue_id: str,
    service: IssueLifecycleService = Depends(get_lifecycle_service)
):
    records = await service.get_history(issue_id)
    return [HistoryRecordResponse.from_domain(r) for r in records]


@issues_router.post(
    "/{issue_id}/transitions",
    response_model=IssueResponse,
    summary="Change issue status",
    description="""
    Staff-initiated status change. Changes outside the workflow
    (e.g. `pending -> resolved`) return 409 and leave the issue untouched.
    Passing `expected_version` turns a concurrent modification into a 409.
    """,
    responses={404: {"description": "Issue not found"}, 409: {"description": "Invalid transition or stale write"}}
)
async def transition_issue(
    issue_id: str,
    payload: TransitionRequest,
    service: IssueLifecycleService = Depends(get_lifecycle_service)
):
    issue = await service.transition_issue(
        issue_id,
        payload.status,
        actor_id=payload.actor_id,
        notes=payload.notes,
        expected_version=payload.expected_version,
        assignee_id=payload.assignee_id,
    )
    return IssueResponse.from_domain(issue, utc_now())


@issues_router.post(
    "/{issue_id}/feedback",
    response_model=IssueResponse,
    summary="Rate a resolved issue",
    description="""
    One rating per issue, reporter only. `is_resolved: false` reopens the issue.
    """,
    responses={
        403: {"description": "Caller is not the reporter"},
        409: {"description": "Already rated or not resolved"},
        422: {"description": "Rating outside 1-5"},
    }
)
async def submit_feedback(
    issue_id: str,
    payload: FeedbackRequest,
    service: FeedbackService = Depends(get_feedback_service)
):
    issue = await service.submit_feedback(
        issue_id,
        citizen_id=payload.citizen_id,
        rating=payload.rating,
        comment=payload.comment,
        is_resolved=payload.is_resolved,
    )
    return IssueResponse.from_domain(issue, utc_now())


@issues_router.post(
    "/{issue_id}/upvotes",
    response_model=IssueResponse,
    summary="Upvote an issue",
    description="Idempotent per citizen."
)
async def upvote_issue(
    issue_id: str,
    payload: UpvoteRequest,
    service: EngagementService = Depends(get_engagement_service)
):
    issue = await service.upvote(issue_id, payload.citizen_id)
    return IssueResponse.from_domain(issue, utc_now())


@issues_router.delete(
    "/{issue_id}/upvotes/{citizen_id}",
    response_model=IssueResponse,
    summary="Withdraw an upvote"
)
async def remove_upvote(
    issue_id: str,
    citizen_id: str,
    service: EngagementService = Depends(get_engagement_service)
):
    issue = await service.remove_upvote(issue_id, citizen_id)
    return IssueResponse.from_domain(issue, utc_now())


@issues_router.patch(
    "/{issue_id}/priority",
    response_model=IssueResponse,
    summary="Override issue priority",
    description="Administrative change. The SLA deadline is not recomputed."
)
async def override_priority(
    issue_id: str,
    payload: PriorityOverrideRequest,
    service: IssueLifecycleService = Depends(get_lifecycle_service)
):
    issue = await service.override_priority(
        issue_id,
        payload.priority,
        actor_id=payload.actor_id,
        reason=payload.reason,
        expected_version=payload.expected_version,
    )
    return IssueResponse.from_domain(issue, utc_now())


# ========== SLA Routes ==========

@sla_router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Run the escalation sweep now",
    description="""
    Same job the scheduler runs. Each eligible issue moves up at most one
    level per sweep; running it twice for the same instant is a no-op.
    """
)
async def run_sweep(
    payload: Optional[SweepRequest] = None,
    service: EscalationService = Depends(get_escalation_service)
):
    now = ensure_utc(payload.now) if payload and payload.now else utc_now()
    escalated = await service.run_escalation_sweep(now)
    return SweepResponse(escalated=escalated, count=len(escalated), evaluated_at=now)


@sla_router.post(
    "/escalate",
    response_model=IssueResponse,
    summary="Escalate an issue manually",
    description="Raises one level regardless of thresholds. Level 3 issues are returned unchanged."
)
async def escalate_issue(
    payload: EscalateRequest,
    service: EscalationService = Depends(get_escalation_service)
):
    issue = await service.escalate_issue(
        payload.issue_id, reason=payload.reason, actor_id=payload.actor_id
    )
    return IssueResponse.from_domain(issue, utc_now())


@sla_router.get(
    "/dashboard",
    response_model=SLADashboardResponse,
    summary="Get SLA dashboard",
    description="""
    Overdue and due-soon counts, SLA compliance of resolved issues,
    escalated issues per level and all matching issues ordered by deadline.
    """
)
async def get_dashboard(
    department: Optional[str] = Query(None, description="Filter by department"),
    ward: Optional[str] = Query(None, description="Filter by ward"),
    service: EscalationService = Depends(get_escalation_service)
):
    return await service.sla_dashboard(utc_now(), department=department, ward=ward)
