"""
Issue Workflow
==============

The status state machine as an explicit table, validated in one place.
"""

from enum import Enum
from typing import Dict, FrozenSet

from civictrack.config import IssueStatus
from civictrack.core import InvalidTransitionException


class Initiator(str, Enum):
    """Who is allowed to request a given transition."""
    STAFF = "staff"
    SYSTEM = "system"
    CITIZEN = "citizen"


S = IssueStatus

TRANSITIONS: Dict[IssueStatus, Dict[IssueStatus, Initiator]] = {
    S.PENDING: {
        S.ASSIGNED: Initiator.STAFF,
        S.REJECTED: Initiator.STAFF,
        S.ESCALATED: Initiator.SYSTEM,
    },
    S.ASSIGNED: {
        S.IN_PROGRESS: Initiator.STAFF,
        S.REJECTED: Initiator.STAFF,
        S.ESCALATED: Initiator.SYSTEM,
    },
    S.IN_PROGRESS: {
        S.RESOLVED: Initiator.STAFF,
        S.REJECTED: Initiator.STAFF,
        S.ESCALATED: Initiator.SYSTEM,
    },
    S.ESCALATED: {
        S.ASSIGNED: Initiator.STAFF,
        S.IN_PROGRESS: Initiator.STAFF,
    },
    S.RESOLVED: {
        S.REOPENED: Initiator.CITIZEN,
    },
    S.REOPENED: {
        S.ASSIGNED: Initiator.STAFF,
        S.IN_PROGRESS: Initiator.STAFF,
        # reopened work is active again and the sweeper treats it as such
        S.ESCALATED: Initiator.SYSTEM,
    },
    S.REJECTED: {},
}

INITIAL_STATUS = S.PENDING


class IssueWorkflow:
    """Central validation of requested status changes."""

    @staticmethod
    def allowed_targets(current: IssueStatus, initiator: Initiator = Initiator.STAFF) -> FrozenSet[IssueStatus]:
        return frozenset(
            target for target, who in TRANSITIONS[IssueStatus(current)].items()
            if who == initiator
        )

    @staticmethod
    def can_escalate(current: IssueStatus) -> bool:
        """Escalation may start from any status with a system edge, or repeat on escalated."""
        current = IssueStatus(current)
        return current == S.ESCALATED or S.ESCALATED in TRANSITIONS[current]

    @staticmethod
    def validate(
        current: IssueStatus,
        requested: IssueStatus,
        initiator: Initiator = Initiator.STAFF
    ) -> None:
        """
        Raise InvalidTransitionException unless `current -> requested` is in
        the table for this initiator. Status is never coerced.
        """
        current = IssueStatus(current)
        requested = IssueStatus(requested)
        allowed_by = TRANSITIONS[current].get(requested)

        if allowed_by is None:
            raise InvalidTransitionException(current.value, requested.value)
        if allowed_by != initiator:
            raise InvalidTransitionException(
                current.value,
                requested.value,
                reason=f"only the {allowed_by.value} may request this change"
            )
