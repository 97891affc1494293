"""
Issue Application Services
==========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations
"""

import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional
from uuid import uuid4

from civictrack.config import (
    IssueCategory,
    IssueStatus,
    MAX_ESCALATION_LEVEL,
    Priority,
)
from civictrack.core import (
    AlreadyRatedException,
    InvalidRatingException,
    InvalidTransitionException,
    NotReporterException,
    NotResolvedException,
    RepositoryException,
    ResourceNotFoundException,
    StaleWriteException,
    ValidationException,
)
from civictrack.issues.application.dto import (
    EscalationStats,
    SLADashboardIssue,
    SLADashboardResponse,
    SLADashboardSummary,
)
from civictrack.issues.domain import (
    DeadlineCalculator,
    EscalationPolicy,
    EscalationRecord,
    Feedback,
    Initiator,
    Issue,
    IssueWorkflow,
    Location,
    SLAConfig,
    StateHistoryRecord,
)
from civictrack.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

INITIAL_HISTORY_NOTE = "Issue submitted"
DEFAULT_ESCALATION_REASON = "SLA deadline exceeded"
REPORT_CODE_ATTEMPTS = 5


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_report_code(number: int) -> str:
    """R00001-style code; widens past five digits instead of wrapping."""
    return f"R{number:05d}"


# ========== Repository Interfaces (Dependency Inversion) ==========

class IIssueRepository(ABC):
    """Interface for issue data access."""

    @abstractmethod
    async def next_report_number(self) -> int:
        """Next sequential report number."""

    @abstractmethod
    async def add(self, issue: Issue, report_number: int) -> None:
        """Insert a new issue."""

    @abstractmethod
    async def get(self, issue_id: str) -> Optional[Issue]:
        """Load an issue with its escalation history and upvoters."""

    @abstractmethod
    async def exists(self, issue_id: str) -> bool:
        """Check if issue exists."""

    @abstractmethod
    async def save(self, issue: Issue, expected_version: int, require_no_feedback: bool = False) -> bool:
        """
        Persist mutable fields if the stored version still equals
        `expected_version`. Returns False when the guard missed.
        """

    @abstractmethod
    async def compare_and_escalate(
        self,
        issue_id: str,
        expected_level: int,
        expected_status: IssueStatus,
        new_level: int,
        penalty: int,
        now: datetime
    ) -> bool:
        """Conditional escalation update. Returns False when the guard missed."""

    @abstractmethod
    async def add_escalation(self, issue_id: str, record: EscalationRecord) -> None:
        """Append an escalation history entry."""

    @abstractmethod
    async def add_upvote(self, issue_id: str, citizen_id: str, now: datetime) -> bool:
        """Add citizen to the upvoter set; True if membership changed."""

    @abstractmethod
    async def remove_upvote(self, issue_id: str, citizen_id: str, now: datetime) -> bool:
        """Remove citizen from the upvoter set; True if membership changed."""

    @abstractmethod
    async def list_escalation_candidates(self, now: datetime) -> List[Issue]:
        """Active issues below the top level whose deadline has passed."""

    @abstractmethod
    async def list(self, filters: dict, limit: int = 1000, offset: int = 0) -> List[Issue]:
        """List issues with filters, ordered by deadline."""


class IStateHistoryRepository(ABC):
    """Interface for the append-only status audit trail."""

    @abstractmethod
    async def append(self, record: StateHistoryRecord) -> StateHistoryRecord:
        """Insert a record."""

    @abstractmethod
    async def list_for_issue(self, issue_id: str) -> List[StateHistoryRecord]:
        """Records in commit order."""


class ISLAConfigProvider(ABC):
    """Interface for SLA configuration access."""

    @abstractmethod
    def get_config(self) -> SLAConfig:
        """Get current SLA configuration."""


class IEscalationNotifier(ABC):
    """Interface for telling the escalation target about an escalation."""

    @abstractmethod
    async def notify_escalation(self, issue: Issue, record: EscalationRecord, channels: List[str]) -> bool:
        """Send a notification. Must not raise for delivery failures."""


class IUnitOfWork(ABC):
    """Transaction boundary shared by the repositories of one request."""

    @abstractmethod
    async def commit(self) -> None:
        """Commit the current transaction."""

    @abstractmethod
    async def rollback(self) -> None:
        """Roll back the current transaction."""

    @abstractmethod
    def savepoint(self):
        """Async context manager for a nested transaction."""


# ========== Application Services ==========

class _TransactionalService:
    """Every public operation commits everything or nothing."""

    def __init__(self, unit_of_work: IUnitOfWork):
        self._uow = unit_of_work

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[None]:
        try:
            yield
            await self._uow.commit()
        except Exception:
            await self._uow.rollback()
            raise

    @staticmethod
    def _require(issue: Optional[Issue], issue_id: str) -> Issue:
        if issue is None:
            raise ResourceNotFoundException("Issue", issue_id)
        return issue


class IssueLifecycleService(_TransactionalService):
    """
    Issue creation and the transition engine.

    Status changes go through IssueWorkflow and are written together with
    exactly one state history record.
    """

    def __init__(
        self,
        issue_repository: IIssueRepository,
        history_repository: IStateHistoryRepository,
        config_provider: ISLAConfigProvider,
        unit_of_work: IUnitOfWork
    ):
        super().__init__(unit_of_work)
        self._issue_repo = issue_repository
        self._history_repo = history_repository
        self._config_provider = config_provider

    async def create_issue(
        self,
        title: str,
        description: str,
        category: str,
        priority: Optional[str],
        department: str,
        reporter_id: str,
        location: Location,
        subcategory: Optional[str] = None,
        ward: Optional[str] = None,
        zone: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Issue:
        """
        Create an issue in `pending` with its fixed SLA deadline.

        The deadline is computed here, once, from the priority at creation.
        """
        now = ensure_utc(now) if now else utc_now()
        config = self._config_provider.get_config()

        if not title or not title.strip():
            raise ValidationException("title is required")
        if not description or not description.strip():
            raise ValidationException("description is required")
        if not department or not department.strip():
            raise ValidationException("department is required")
        if not reporter_id:
            raise ValidationException("reporter_id is required")
        try:
            category = IssueCategory(category)
            priority = Priority(priority) if priority else Priority.MEDIUM
        except ValueError as e:
            raise ValidationException(str(e))

        async with self._transaction():
            for attempt in range(REPORT_CODE_ATTEMPTS):
                number = await self._issue_repo.next_report_number()
                issue = Issue(
                    id=str(uuid4()),
                    report_code=format_report_code(number),
                    title=title.strip(),
                    description=description.strip(),
                    category=category,
                    priority=priority,
                    location=location,
                    reporter_id=reporter_id,
                    department=department.strip(),
                    created_at=now,
                    updated_at=now,
                    due_time=DeadlineCalculator.calculate_due_time(now, config.due_time_days),
                    deadline=DeadlineCalculator.calculate_deadline(now, priority, config),
                    subcategory=subcategory,
                    ward=ward,
                    zone=zone,
                )
                try:
                    async with self._uow.savepoint():
                        await self._issue_repo.add(issue, number)
                except RepositoryException:
                    logger.warning(
                        "Report code collision, retrying",
                        extra={"report_code": issue.report_code, "attempt": attempt + 1}
                    )
                    continue
                break
            else:
                raise RepositoryException("Could not allocate a report code")

            await self._history_repo.append(StateHistoryRecord(
                issue_id=issue.id,
                from_status=None,
                to_status=IssueStatus.PENDING,
                timestamp=now,
                changed_by=reporter_id,
                notes=INITIAL_HISTORY_NOTE,
            ))

        logger.info(
            "Issue created",
            extra={
                "issue_id": issue.id,
                "report_code": issue.report_code,
                "priority": issue.priority.value,
                "deadline": issue.deadline.isoformat(),
            }
        )
        return issue

    async def get_issue(self, issue_id: str) -> Issue:
        async with self._transaction():
            return self._require(await self._issue_repo.get(issue_id), issue_id)

    async def get_history(self, issue_id: str) -> List[StateHistoryRecord]:
        async with self._transaction():
            if not await self._issue_repo.exists(issue_id):
                raise ResourceNotFoundException("Issue", issue_id)
            return await self._history_repo.list_for_issue(issue_id)

    async def transition_issue(
        self,
        issue_id: str,
        new_status: str,
        actor_id: Optional[str],
        notes: str = "",
        expected_version: Optional[int] = None,
        assignee_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Issue:
        """
        Apply a staff-initiated status change.

        Raises:
            ResourceNotFoundException: unknown issue
            InvalidTransitionException: change not in the workflow table
            StaleWriteException: the issue changed since it was read
        """
        now = ensure_utc(now) if now else utc_now()
        try:
            requested = IssueStatus(new_status)
        except ValueError:
            raise ValidationException(f"Unknown status: {new_status}")

        async with self._transaction():
            issue = self._require(await self._issue_repo.get(issue_id), issue_id)

            if expected_version is not None and expected_version != issue.version:
                raise StaleWriteException(issue_id, expected_version)

            read_version = issue.version
            record = issue.apply_transition(
                requested,
                now,
                actor_id=actor_id,
                notes=notes,
                initiator=Initiator.STAFF,
                assignee_id=assignee_id,
            )

            if not await self._issue_repo.save(issue, read_version):
                raise StaleWriteException(issue_id, read_version)
            await self._history_repo.append(record)
            issue = await self._issue_repo.get(issue_id)

        logger.info(
            "Issue transitioned",
            extra={
                "issue_id": issue_id,
                "from_status": record.from_status.value,
                "to_status": record.to_status.value,
                "actor_id": actor_id,
            }
        )
        return issue

    async def override_priority(
        self,
        issue_id: str,
        priority: str,
        actor_id: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> Issue:
        """
        Administrative priority change.

        The SLA deadline stays as computed at creation.
        """
        now = ensure_utc(now) if now else utc_now()
        try:
            new_priority = Priority(priority)
        except ValueError:
            raise ValidationException(f"Invalid priority: {priority}")

        async with self._transaction():
            issue = self._require(await self._issue_repo.get(issue_id), issue_id)
            if expected_version is not None and expected_version != issue.version:
                raise StaleWriteException(issue_id, expected_version)

            read_version = issue.version
            old_priority = issue.priority
            issue.priority = new_priority
            issue.priority_overridden_by = actor_id
            issue.priority_overridden_at = now
            issue.updated_at = now

            if not await self._issue_repo.save(issue, read_version):
                raise StaleWriteException(issue_id, read_version)
            issue = await self._issue_repo.get(issue_id)

        logger.info(
            "Issue priority overridden",
            extra={
                "issue_id": issue_id,
                "old_priority": old_priority.value,
                "new_priority": new_priority.value,
                "actor_id": actor_id,
                "reason": reason,
            }
        )
        return issue


class EngagementService(_TransactionalService):
    """Deduplicated citizen upvotes."""

    def __init__(self, issue_repository: IIssueRepository, unit_of_work: IUnitOfWork):
        super().__init__(unit_of_work)
        self._issue_repo = issue_repository

    async def upvote(self, issue_id: str, citizen_id: str, now: Optional[datetime] = None) -> Issue:
        """Add the citizen's upvote; a repeat is a no-op."""
        if not citizen_id:
            raise ValidationException("citizen_id is required")
        now = ensure_utc(now) if now else utc_now()

        async with self._transaction():
            if not await self._issue_repo.exists(issue_id):
                raise ResourceNotFoundException("Issue", issue_id)
            changed = await self._issue_repo.add_upvote(issue_id, citizen_id, now)
            issue = await self._issue_repo.get(issue_id)

        logger.info(
            "Upvote recorded" if changed else "Upvote already present",
            extra={"issue_id": issue_id, "citizen_id": citizen_id, "upvotes": issue.upvotes}
        )
        return issue

    async def remove_upvote(self, issue_id: str, citizen_id: str, now: Optional[datetime] = None) -> Issue:
        """Withdraw the citizen's upvote; removing an absent one is a no-op."""
        if not citizen_id:
            raise ValidationException("citizen_id is required")
        now = ensure_utc(now) if now else utc_now()

        async with self._transaction():
            if not await self._issue_repo.exists(issue_id):
                raise ResourceNotFoundException("Issue", issue_id)
            changed = await self._issue_repo.remove_upvote(issue_id, citizen_id, now)
            issue = await self._issue_repo.get(issue_id)

        if changed:
            logger.info(
                "Upvote removed",
                extra={"issue_id": issue_id, "citizen_id": citizen_id, "upvotes": issue.upvotes}
            )
        return issue


class FeedbackService(_TransactionalService):
    """
    One-shot citizen rating of a resolved issue.

    Negative feedback (`is_resolved=False`) is the only way a resolved issue
    re-enters the workflow.
    """

    def __init__(
        self,
        issue_repository: IIssueRepository,
        history_repository: IStateHistoryRepository,
        unit_of_work: IUnitOfWork
    ):
        super().__init__(unit_of_work)
        self._issue_repo = issue_repository
        self._history_repo = history_repository

    async def submit_feedback(
        self,
        issue_id: str,
        citizen_id: str,
        rating: int,
        comment: Optional[str],
        is_resolved: bool,
        now: Optional[datetime] = None
    ) -> Issue:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidRatingException(rating)
        now = ensure_utc(now) if now else utc_now()

        async with self._transaction():
            issue = self._require(await self._issue_repo.get(issue_id), issue_id)

            if issue.reporter_id != citizen_id:
                raise NotReporterException(issue_id, citizen_id)
            if issue.has_feedback:
                raise AlreadyRatedException(issue_id)
            if issue.status != IssueStatus.RESOLVED:
                raise NotResolvedException(issue_id, issue.status.value)

            read_version = issue.version
            issue.record_feedback(Feedback(
                rating=rating,
                comment=comment or "",
                is_resolved=bool(is_resolved),
                submitted_by=citizen_id,
                submitted_at=now,
            ))

            record = None
            if not is_resolved:
                record = issue.apply_transition(
                    IssueStatus.REOPENED,
                    now,
                    actor_id=citizen_id,
                    notes=f"Reopened by citizen feedback (rating {rating})",
                    initiator=Initiator.CITIZEN,
                )

            if not await self._issue_repo.save(issue, read_version, require_no_feedback=True):
                current = await self._issue_repo.get(issue_id)
                if current is not None and current.has_feedback:
                    raise AlreadyRatedException(issue_id)
                raise StaleWriteException(issue_id, read_version)
            if record is not None:
                await self._history_repo.append(record)
            issue = await self._issue_repo.get(issue_id)

        logger.info(
            "Feedback submitted",
            extra={
                "issue_id": issue_id,
                "rating": rating,
                "is_resolved": bool(is_resolved),
                "status": issue.status.value,
            }
        )
        return issue


class EscalationService(_TransactionalService):
    """
    SLA escalation: the periodic sweep, manual escalation and the dashboard.

    Escalation is a conditional update on (level, status); a miss means a
    concurrent change won and the issue is retried on the next sweep.
    """

    def __init__(
        self,
        issue_repository: IIssueRepository,
        history_repository: IStateHistoryRepository,
        config_provider: ISLAConfigProvider,
        unit_of_work: IUnitOfWork,
        notifier: Optional[IEscalationNotifier] = None
    ):
        super().__init__(unit_of_work)
        self._issue_repo = issue_repository
        self._history_repo = history_repository
        self._config_provider = config_provider
        self._notifier = notifier

    async def run_escalation_sweep(self, now: Optional[datetime] = None) -> List[str]:
        """
        Escalate every eligible active issue by one level.

        Returns:
            Ids of the issues escalated in this sweep
        """
        now = ensure_utc(now) if now else utc_now()
        config = self._config_provider.get_config()
        start = time.perf_counter()

        async with self._transaction():
            candidates = await self._issue_repo.list_escalation_candidates(now)

        escalated: List[str] = []
        skipped = 0
        failed = 0

        for issue in candidates:
            new_level = EscalationPolicy.next_level(
                issue.escalation_level, issue.deadline, now, config, issue.last_escalated_at
            )
            if new_level is None or not IssueWorkflow.can_escalate(issue.status):
                continue

            try:
                async with self._transaction():
                    record = await self._apply_escalation(
                        issue, new_level, DEFAULT_ESCALATION_REASON, None, now, config
                    )
            except Exception as e:
                failed += 1
                logger.error(
                    "Escalation failed, deferring to next sweep",
                    extra={"issue_id": issue.id, "error": str(e)}
                )
                continue

            if record is None:
                skipped += 1
                logger.info(
                    "Escalation guard missed, deferring to next sweep",
                    extra={"issue_id": issue.id, "expected_level": issue.escalation_level}
                )
                continue

            escalated.append(issue.id)
            await self._notify(issue, record, config)

        logger.info(
            "Escalation sweep completed",
            extra={
                "candidates": len(candidates),
                "escalated": len(escalated),
                "skipped": skipped,
                "failed": failed,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            }
        )
        return escalated

    async def escalate_issue(
        self,
        issue_id: str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Issue:
        """
        Manually raise an issue one level regardless of thresholds.

        An issue already at the top level is returned unchanged.
        """
        now = ensure_utc(now) if now else utc_now()
        config = self._config_provider.get_config()

        async with self._transaction():
            issue = self._require(await self._issue_repo.get(issue_id), issue_id)
            if issue.escalation_level >= MAX_ESCALATION_LEVEL:
                return issue
            if not IssueWorkflow.can_escalate(issue.status):
                raise InvalidTransitionException(issue.status.value, IssueStatus.ESCALATED.value)

            record = await self._apply_escalation(
                issue, issue.escalation_level + 1, reason or DEFAULT_ESCALATION_REASON,
                actor_id, now, config
            )
            if record is None:
                raise StaleWriteException(issue_id)
            updated = await self._issue_repo.get(issue_id)

        await self._notify(updated, record, config)
        return updated

    async def _apply_escalation(
        self,
        issue: Issue,
        new_level: int,
        reason: str,
        actor_id: Optional[str],
        now: datetime,
        config: SLAConfig
    ) -> Optional[EscalationRecord]:
        """Guarded update plus its history rows. None if the guard missed."""
        penalty = EscalationPolicy.penalty_for_level(new_level, config)
        applied = await self._issue_repo.compare_and_escalate(
            issue.id, issue.escalation_level, issue.status, new_level, penalty, now
        )
        if not applied:
            return None

        record = EscalationRecord(
            level=new_level,
            escalated_at=now,
            target=EscalationPolicy.target_for_level(new_level, config),
            reason=reason,
        )
        await self._issue_repo.add_escalation(issue.id, record)

        if issue.status != IssueStatus.ESCALATED:
            IssueWorkflow.validate(issue.status, IssueStatus.ESCALATED, Initiator.SYSTEM)
            await self._history_repo.append(StateHistoryRecord(
                issue_id=issue.id,
                from_status=issue.status,
                to_status=IssueStatus.ESCALATED,
                timestamp=now,
                changed_by=actor_id,
                notes=f"Escalated to level {new_level} ({record.target}): {reason}",
            ))

        logger.info(
            "Issue escalated",
            extra={
                "issue_id": issue.id,
                "from_level": issue.escalation_level,
                "to_level": new_level,
                "target": record.target,
                "penalty_points": penalty,
            }
        )
        return record

    async def _notify(self, issue: Issue, record: EscalationRecord, config: SLAConfig) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.notify_escalation(
                issue, record, config.get_channels_for_level(record.level)
            )
        except Exception as e:
            logger.error(
                "Escalation notification failed",
                extra={"issue_id": issue.id, "error": str(e)}
            )

    async def sla_dashboard(
        self,
        now: Optional[datetime] = None,
        department: Optional[str] = None,
        ward: Optional[str] = None
    ) -> SLADashboardResponse:
        """SLA overview: overdue and due-soon counts, compliance, escalations."""
        now = ensure_utc(now) if now else utc_now()
        config = self._config_provider.get_config()

        filters: Dict[str, str] = {}
        if department:
            filters["department"] = department
        if ward:
            filters["ward"] = ward

        async with self._transaction():
            issues = await self._issue_repo.list(filters)

        today = now.date()
        overdue = due_today = due_tomorrow = 0
        resolved = on_time = 0
        per_level = {1: 0, 2: 0, 3: 0}
        rows = []

        for issue in issues:
            if issue.is_active:
                deadline_day = issue.deadline.date()
                if issue.is_overdue(now):
                    overdue += 1
                elif deadline_day == today:
                    due_today += 1
                elif (deadline_day - today).days == 1:
                    due_tomorrow += 1

            if issue.status == IssueStatus.RESOLVED and issue.resolution_time is not None:
                resolved += 1
                if issue.resolution_time <= config.get_sla_hours(issue.priority):
                    on_time += 1
            if issue.status == IssueStatus.ESCALATED:
                per_level[issue.escalation_level] += 1

            rows.append(SLADashboardIssue.from_domain(issue, now))

        compliance = round(on_time / resolved * 100, 2) if resolved else 0.0

        return SLADashboardResponse(
            summary=SLADashboardSummary(
                total_issues=len(issues),
                overdue_issues=overdue,
                due_today=due_today,
                due_tomorrow=due_tomorrow,
                sla_compliance_rate=compliance,
            ),
            escalation_stats=EscalationStats(
                level1=per_level[1], level2=per_level[2], level3=per_level[3]
            ),
            issues=rows,
        )
