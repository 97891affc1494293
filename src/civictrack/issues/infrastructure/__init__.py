"""
Issue Infrastructure Layer
==========================

Infrastructure implementations for the issue module:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer
- External: External service integrations (Slack, config watcher, scheduler)
"""

from civictrack.issues.infrastructure.models import (
    IssueModel,
    IssueUpvoteModel,
    EscalationModel,
    StateHistoryModel,
)
from civictrack.issues.infrastructure.repositories import (
    SQLAlchemyIssueRepository,
    SQLAlchemyStateHistoryRepository,
    SQLAlchemyUnitOfWork,
    YAMLConfigProvider,
    load_sla_config,
)
from civictrack.issues.infrastructure.external import (
    SLAConfigManager,
    SlackEscalationNotifier,
    CircuitBreaker,
    EscalationScheduler,
)

__all__ = [
    "IssueModel",
    "IssueUpvoteModel",
    "EscalationModel",
    "StateHistoryModel",
    "SQLAlchemyIssueRepository",
    "SQLAlchemyStateHistoryRepository",
    "SQLAlchemyUnitOfWork",
    "YAMLConfigProvider",
    "load_sla_config",
    "SLAConfigManager",
    "SlackEscalationNotifier",
    "CircuitBreaker",
    "EscalationScheduler",
]
