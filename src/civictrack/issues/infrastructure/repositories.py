"""
Issue Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. Every write that must not lose a concurrent
update is a single guarded UPDATE whose WHERE clause re-checks what the
caller read.
"""

from pathlib import Path
from typing import List, Optional
from datetime import datetime
from uuid import UUID

import yaml
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from civictrack.config import (
    ACTIVE_STATUSES,
    IssueCategory,
    IssueStatus,
    MAX_ESCALATION_LEVEL,
    Priority,
)
from civictrack.core import ConfigurationException, RepositoryException
from civictrack.issues.application.services import (
    IIssueRepository,
    ISLAConfigProvider,
    IStateHistoryRepository,
    IUnitOfWork,
)
from civictrack.issues.domain import (
    EscalationRecord,
    Feedback,
    Issue,
    Location,
    SLAConfig,
    StateHistoryRecord,
)
from civictrack.issues.infrastructure.models import (
    EscalationModel,
    IssueModel,
    IssueUpvoteModel,
    StateHistoryModel,
)
from civictrack.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _to_uuid(issue_id: str) -> Optional[UUID]:
    try:
        return UUID(str(issue_id))
    except ValueError:
        return None


def to_domain(model: IssueModel) -> Issue:
    """Map a loaded IssueModel (with children) to the domain entity."""
    feedback = None
    if model.feedback_submitted_at is not None:
        feedback = Feedback(
            rating=model.feedback_rating,
            comment=model.feedback_comment or "",
            is_resolved=bool(model.feedback_is_resolved),
            submitted_by=model.feedback_submitted_by,
            submitted_at=model.feedback_submitted_at,
        )

    return Issue(
        id=str(model.id),
        report_code=model.report_code,
        title=model.title,
        description=model.description,
        category=IssueCategory(model.category),
        priority=Priority(model.priority),
        location=Location(
            address=model.address,
            city=model.city,
            state=model.state,
            pincode=model.pincode,
            latitude=model.latitude,
            longitude=model.longitude,
        ),
        reporter_id=model.reporter_id,
        department=model.department,
        created_at=model.created_at,
        updated_at=model.updated_at,
        due_time=model.due_time,
        deadline=model.deadline,
        status=IssueStatus(model.status),
        subcategory=model.subcategory,
        ward=model.ward,
        zone=model.zone,
        assignee_id=model.assignee_id,
        rejection_reason=model.rejection_reason,
        escalation_level=model.escalation_level,
        escalation_history=[
            EscalationRecord(
                level=e.level,
                escalated_at=e.escalated_at,
                target=e.target,
                reason=e.reason,
            )
            for e in model.escalations
        ],
        penalty_points=model.penalty_points,
        last_escalated_at=model.last_escalated_at,
        upvotes=model.upvotes,
        upvoted_by=frozenset(u.citizen_id for u in model.upvoters),
        feedback=feedback,
        resolution_time=model.resolution_time,
        priority_overridden_by=model.priority_overridden_by,
        priority_overridden_at=model.priority_overridden_at,
        version=model.version,
    )


class SQLAlchemyUnitOfWork(IUnitOfWork):
    """Transaction control over one AsyncSession."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()

    def savepoint(self):
        return self._session.begin_nested()


class SQLAlchemyIssueRepository(IIssueRepository):
    """
    SQLAlchemy implementation of issue repository.

    Reads always bypass the identity map so that a guarded update made by
    another session is visible.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def next_report_number(self) -> int:
        stmt = select(func.coalesce(func.max(IssueModel.report_number), 0))
        result = await self._session.execute(stmt)
        return int(result.scalar_one()) + 1

    async def add(self, issue: Issue, report_number: int) -> None:
        """Insert a new issue. A duplicate report code raises RepositoryException."""
        loc = issue.location
        model = IssueModel(
            id=UUID(issue.id),
            report_number=report_number,
            report_code=issue.report_code,
            title=issue.title,
            description=issue.description,
            category=issue.category.value,
            subcategory=issue.subcategory,
            ward=issue.ward,
            zone=issue.zone,
            address=loc.address,
            city=loc.city,
            state=loc.state,
            pincode=loc.pincode,
            latitude=loc.latitude,
            longitude=loc.longitude,
            reporter_id=issue.reporter_id,
            assignee_id=issue.assignee_id,
            department=issue.department,
            status=issue.status.value,
            priority=issue.priority.value,
            deadline=issue.deadline,
            escalation_level=issue.escalation_level,
            penalty_points=issue.penalty_points,
            upvotes=0,
            created_at=issue.created_at,
            updated_at=issue.updated_at,
            due_time=issue.due_time,
            version=issue.version,
        )

        self._session.add(model)
        try:
            await self._session.flush()
        except IntegrityError as e:
            self._session.expunge(model)
            raise RepositoryException(
                f"Could not insert issue {issue.report_code}",
                details={"error": str(e.orig)}
            )

    async def get(self, issue_id: str) -> Optional[Issue]:
        """Get issue by id, or None."""
        issue_uuid = _to_uuid(issue_id)
        if issue_uuid is None:
            return None

        stmt = (
            select(IssueModel)
            .where(IssueModel.id == issue_uuid)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return to_domain(model) if model else None

    async def exists(self, issue_id: str) -> bool:
        """Check if issue exists."""
        issue_uuid = _to_uuid(issue_id)
        if issue_uuid is None:
            return False

        stmt = select(IssueModel.id).where(IssueModel.id == issue_uuid)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def save(self, issue: Issue, expected_version: int, require_no_feedback: bool = False) -> bool:
        """
        Write the mutable fields of `issue` and bump the version.

        Returns False if the row's version moved on (or, with
        `require_no_feedback`, feedback appeared) since it was read.
        """
        conditions = [
            IssueModel.id == UUID(issue.id),
            IssueModel.version == expected_version,
        ]
        if require_no_feedback:
            conditions.append(IssueModel.feedback_submitted_at.is_(None))

        values = dict(
            status=issue.status.value,
            priority=issue.priority.value,
            assignee_id=issue.assignee_id,
            rejection_reason=issue.rejection_reason,
            resolution_time=issue.resolution_time,
            priority_overridden_by=issue.priority_overridden_by,
            priority_overridden_at=issue.priority_overridden_at,
            updated_at=issue.updated_at,
            version=IssueModel.version + 1,
        )
        if issue.feedback is not None:
            values.update(
                feedback_rating=issue.feedback.rating,
                feedback_comment=issue.feedback.comment,
                feedback_is_resolved=issue.feedback.is_resolved,
                feedback_submitted_by=issue.feedback.submitted_by,
                feedback_submitted_at=issue.feedback.submitted_at,
            )

        stmt = (
            update(IssueModel)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def compare_and_escalate(
        self,
        issue_id: str,
        expected_level: int,
        expected_status: IssueStatus,
        new_level: int,
        penalty: int,
        now: datetime
    ) -> bool:
        """Move one level up only if level and status are still as read."""
        stmt = (
            update(IssueModel)
            .where(
                IssueModel.id == UUID(issue_id),
                IssueModel.escalation_level == expected_level,
                IssueModel.status == IssueStatus(expected_status).value,
            )
            .values(
                escalation_level=new_level,
                status=IssueStatus.ESCALATED.value,
                penalty_points=IssueModel.penalty_points + penalty,
                last_escalated_at=now,
                updated_at=now,
                version=IssueModel.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def add_escalation(self, issue_id: str, record: EscalationRecord) -> None:
        self._session.add(EscalationModel(
            issue_id=UUID(issue_id),
            level=record.level,
            escalated_at=record.escalated_at,
            target=record.target,
            reason=record.reason,
        ))
        await self._session.flush()

    async def add_upvote(self, issue_id: str, citizen_id: str, now: datetime) -> bool:
        """
        Insert-if-absent on (issue, citizen); the counter moves only when the
        row was actually inserted.
        """
        issue_uuid = UUID(issue_id)
        values = dict(issue_id=issue_uuid, citizen_id=citizen_id, created_at=now)
        dialect = self._session.get_bind().dialect.name

        if dialect in ("postgresql", "sqlite"):
            if dialect == "postgresql":
                from sqlalchemy.dialects.postgresql import insert as dialect_insert
            else:
                from sqlalchemy.dialects.sqlite import insert as dialect_insert
            stmt = dialect_insert(IssueUpvoteModel).values(**values).on_conflict_do_nothing(
                index_elements=["issue_id", "citizen_id"]
            )
            result = await self._session.execute(stmt)
            inserted = result.rowcount == 1
        else:
            try:
                async with self._session.begin_nested():
                    await self._session.execute(insert(IssueUpvoteModel).values(**values))
                inserted = True
            except IntegrityError:
                inserted = False

        if inserted:
            await self._session.execute(
                update(IssueModel)
                .where(IssueModel.id == issue_uuid)
                .values(upvotes=IssueModel.upvotes + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        return inserted

    async def remove_upvote(self, issue_id: str, citizen_id: str, now: datetime) -> bool:
        issue_uuid = UUID(issue_id)
        result = await self._session.execute(
            delete(IssueUpvoteModel)
            .where(
                IssueUpvoteModel.issue_id == issue_uuid,
                IssueUpvoteModel.citizen_id == citizen_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        await self._session.execute(
            update(IssueModel)
            .where(IssueModel.id == issue_uuid)
            .values(upvotes=IssueModel.upvotes - 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return True

    async def list_escalation_candidates(self, now: datetime) -> List[Issue]:
        stmt = (
            select(IssueModel)
            .where(
                IssueModel.status.in_([s.value for s in ACTIVE_STATUSES]),
                IssueModel.escalation_level < MAX_ESCALATION_LEVEL,
                IssueModel.deadline < now,
            )
            .order_by(IssueModel.deadline.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [to_domain(m) for m in result.scalars().all()]

    async def list(
        self,
        filters: dict,
        limit: int = 1000,
        offset: int = 0
    ) -> List[Issue]:
        """List issues with filters."""
        stmt = select(IssueModel)

        # Apply filters
        conditions = []
        if "status" in filters:
            status_list = filters["status"]
            if isinstance(status_list, list):
                conditions.append(IssueModel.status.in_(status_list))
            else:
                conditions.append(IssueModel.status == status_list)

        for key in ("priority", "department", "ward", "category"):
            if key in filters:
                conditions.append(getattr(IssueModel, key) == filters[key])

        if conditions:
            stmt = stmt.where(*conditions)

        stmt = stmt.order_by(IssueModel.deadline.asc(), IssueModel.report_number.asc())
        stmt = stmt.limit(limit).offset(offset).execution_options(populate_existing=True)

        result = await self._session.execute(stmt)
        return [to_domain(m) for m in result.scalars().all()]


class SQLAlchemyStateHistoryRepository(IStateHistoryRepository):
    """
    SQLAlchemy implementation of the state history repository.

    Insert-only: there is deliberately no update or delete.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def append(self, record: StateHistoryRecord) -> StateHistoryRecord:
        model = StateHistoryModel(
            issue_id=UUID(record.issue_id),
            from_status=record.from_status.value if record.from_status else None,
            to_status=record.to_status.value,
            timestamp=record.timestamp,
            changed_by=record.changed_by,
            notes=record.notes or "",
        )
        self._session.add(model)
        await self._session.flush()

        return StateHistoryRecord(
            issue_id=record.issue_id,
            from_status=record.from_status,
            to_status=record.to_status,
            timestamp=record.timestamp,
            changed_by=record.changed_by,
            notes=record.notes or "",
            id=str(model.id),
        )

    async def list_for_issue(self, issue_id: str) -> List[StateHistoryRecord]:
        issue_uuid = _to_uuid(issue_id)
        if issue_uuid is None:
            return []

        stmt = (
            select(StateHistoryModel)
            .where(StateHistoryModel.issue_id == issue_uuid)
            .order_by(StateHistoryModel.timestamp.asc(), StateHistoryModel.id.asc())
        )
        result = await self._session.execute(stmt)

        return [
            StateHistoryRecord(
                issue_id=str(m.issue_id),
                from_status=IssueStatus(m.from_status) if m.from_status else None,
                to_status=IssueStatus(m.to_status),
                timestamp=m.timestamp,
                changed_by=m.changed_by,
                notes=m.notes,
                id=str(m.id),
            )
            for m in result.scalars().all()
        ]


def load_sla_config(config_path: str) -> SLAConfig:
    """
    Load SLA configuration from YAML.

    A missing file yields the defaults; a malformed one raises
    ConfigurationException.
    """
    config_file = Path(config_path)

    if not config_file.exists():
        logger.warning("SLA config file not found, using defaults", extra={"path": config_path})
        return SLAConfig()

    try:
        with open(config_file, 'r') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationException(
            f"Unreadable SLA configuration in {config_path}",
            details={"error": str(e)}
        )

    try:
        return SLAConfig(**data)
    except (TypeError, ValueError) as e:
        raise ConfigurationException(
            f"Invalid SLA configuration in {config_path}",
            details={"error": str(e)}
        )


class YAMLConfigProvider(ISLAConfigProvider):
    """
    SLA configuration provider that loads from YAML once.

    See SLAConfigManager for the hot-reloading variant.
    """

    def __init__(self, config_path: str):
        self._config_path = config_path
        self._config = load_sla_config(config_path)

    def get_config(self) -> SLAConfig:
        """Get current SLA configuration."""
        return self._config

    def reload(self) -> None:
        """Reload configuration from file."""
        self._config = load_sla_config(self._config_path)
