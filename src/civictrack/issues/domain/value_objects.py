"""
SLA Value Objects
==================

Immutable value objects and pure calculators for the issue SLA domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from civictrack.config import (
    DEFAULT_SLA_HOURS,
    DUE_TIME_DAYS,
    ESCALATION_TARGETS,
    MAX_ESCALATION_LEVEL,
    PENALTY_POINTS_PER_LEVEL,
    Priority,
    VALID_PRIORITIES,
)

SECONDS_PER_HOUR = 3600


class EscalationLevelConfig(BaseModel):
    """Configuration for a single escalation level."""
    level: int = Field(ge=1, le=MAX_ESCALATION_LEVEL, description="Escalation level (1-based)")
    target: str = Field(default="", description="Who is responsible at this level")
    hours_past_deadline: float = Field(
        default=0,
        ge=0,
        description="Hours past the SLA deadline before an issue may enter this level"
    )
    notify: List[str] = Field(default_factory=list, description="Slack channels")


def _default_escalation_levels() -> List[EscalationLevelConfig]:
    return [
        EscalationLevelConfig(level=1, target=ESCALATION_TARGETS[1], notify=["#department-staff"]),
        EscalationLevelConfig(level=2, target=ESCALATION_TARGETS[2], hours_past_deadline=0,
                              notify=["#department-heads"]),
        EscalationLevelConfig(level=3, target=ESCALATION_TARGETS[3], hours_past_deadline=24,
                              notify=["#commissioner-office"]),
    ]


class SLAConfig(BaseModel):
    """
    SLA Configuration loaded from YAML.

    deadline = created_at + sla_hours[priority]

    This is a value object - immutable and defined by its attributes.
    """
    sla_hours: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_SLA_HOURS),
        description="SLA duration in hours by priority"
    )
    due_time_days: int = Field(default=DUE_TIME_DAYS, ge=1, description="Informational due time")
    penalty_points_per_level: int = Field(default=PENALTY_POINTS_PER_LEVEL, ge=0)
    escalation_levels: List[EscalationLevelConfig] = Field(
        default_factory=_default_escalation_levels,
        description="Threshold, target and notification config per escalation level"
    )

    @field_validator("sla_hours")
    @classmethod
    def validate_sla_hours(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Fill missing priorities with the default table and reject unknown keys."""
        unknown = set(v) - set(VALID_PRIORITIES)
        if unknown:
            raise ValueError(f"unknown priorities in sla_hours: {sorted(unknown)}")

        for priority in VALID_PRIORITIES:
            if priority not in v:
                v[priority] = DEFAULT_SLA_HOURS[priority]
            elif v[priority] <= 0:
                raise ValueError(f"sla_hours[{priority}] must be positive")

        return v

    @model_validator(mode="after")
    def fill_escalation_levels(self) -> "SLAConfig":
        """Every level 1..3 must be present; gaps are filled from the defaults."""
        by_level = {esc.level: esc for esc in self.escalation_levels}
        defaults = {esc.level: esc for esc in _default_escalation_levels()}
        for level in range(1, MAX_ESCALATION_LEVEL + 1):
            if level not in by_level:
                by_level[level] = defaults[level]
            elif not by_level[level].target:
                by_level[level] = by_level[level].model_copy(update={"target": defaults[level].target})
        self.escalation_levels = [by_level[level] for level in sorted(by_level)]
        return self

    def get_sla_hours(self, priority: Optional[str]) -> int:
        """Hours allowed for a priority; unknown or missing behaves as medium."""
        key = priority.value if isinstance(priority, Priority) else priority
        if key not in self.sla_hours:
            key = Priority.MEDIUM.value
        return self.sla_hours[key]

    def get_level(self, level: int) -> EscalationLevelConfig:
        for esc in self.escalation_levels:
            if esc.level == level:
                return esc
        raise KeyError(level)

    def get_channels_for_level(self, level: int) -> List[str]:
        """Get Slack channels to notify for given escalation level."""
        try:
            return self.get_level(level).notify
        except KeyError:
            return []


class DeadlineCalculator:
    """
    Pure functions for SLA deadline and projection maths.

    Stateless utility class - all SLA time calculations in one place.
    """

    @staticmethod
    def calculate_deadline(
        created_at: datetime,
        priority: Optional[str],
        config: Optional[SLAConfig] = None
    ) -> datetime:
        """
        Calculate the fixed SLA deadline for an issue.

        Args:
            created_at: When the issue was created
            priority: Issue priority (missing behaves as medium)
            config: SLA configuration; the built-in table when omitted

        Returns:
            The absolute deadline
        """
        config = config or SLAConfig()
        return created_at + timedelta(hours=config.get_sla_hours(priority))

    @staticmethod
    def calculate_due_time(created_at: datetime, days: int = DUE_TIME_DAYS) -> datetime:
        """Informational due time, independent of the SLA deadline."""
        return created_at + timedelta(days=days)

    @staticmethod
    def hours_remaining(deadline: datetime, now: datetime) -> int:
        """ceil((deadline - now) / 1h); negative once the deadline has passed."""
        return math.ceil((deadline - now).total_seconds() / SECONDS_PER_HOUR)

    @staticmethod
    def is_overdue(deadline: datetime, now: datetime) -> bool:
        return now > deadline

    @staticmethod
    def hours_past_deadline(deadline: datetime, now: datetime) -> float:
        return max(0.0, (now - deadline).total_seconds() / SECONDS_PER_HOUR)

    @staticmethod
    def resolution_hours(created_at: datetime, resolved_at: datetime) -> int:
        """Whole hours (rounded up) from creation to resolution, never negative."""
        seconds = max(0.0, (resolved_at - created_at).total_seconds())
        return math.ceil(seconds / SECONDS_PER_HOUR)


class EscalationPolicy:
    """Decides whether, and to which level, an active issue escalates."""

    @staticmethod
    def target_for_level(level: int, config: Optional[SLAConfig] = None) -> str:
        if config is not None:
            try:
                return config.get_level(level).target
            except KeyError:
                pass
        return ESCALATION_TARGETS.get(level, ESCALATION_TARGETS[1])

    @staticmethod
    def penalty_for_level(level: int, config: Optional[SLAConfig] = None) -> int:
        per_level = config.penalty_points_per_level if config else PENALTY_POINTS_PER_LEVEL
        return level * per_level

    @staticmethod
    def next_level(
        current_level: int,
        deadline: datetime,
        now: datetime,
        config: SLAConfig,
        last_escalated_at: Optional[datetime] = None
    ) -> Optional[int]:
        """
        Level the issue should move to at `now`, or None.

        Never skips a level and never goes past the maximum. An issue already
        escalated at or after `now` is left alone so that repeating a sweep
        for the same moment is a no-op.
        """
        if current_level >= MAX_ESCALATION_LEVEL:
            return None
        if not DeadlineCalculator.is_overdue(deadline, now):
            return None
        if last_escalated_at is not None and last_escalated_at >= now:
            return None

        candidate = current_level + 1
        threshold = config.get_level(candidate).hours_past_deadline
        if DeadlineCalculator.hours_past_deadline(deadline, now) < threshold:
            return None
        return candidate


@dataclass(frozen=True)
class SLAProjection:
    """
    Time-dependent view of an issue's SLA, derived from the deadline and a
    caller-supplied "now". Never persisted.
    """
    deadline: datetime
    evaluated_at: datetime
    hours_remaining: int
    is_overdue: bool

    @classmethod
    def at(cls, deadline: datetime, now: datetime) -> "SLAProjection":
        return cls(
            deadline=deadline,
            evaluated_at=now,
            hours_remaining=DeadlineCalculator.hours_remaining(deadline, now),
            is_overdue=DeadlineCalculator.is_overdue(deadline, now),
        )
