import pytest

from civictrack.config import IssueStatus, Priority
from civictrack.core import (
    InvalidTransitionException,
    ResourceNotFoundException,
    StaleWriteException,
    ValidationException,
)
from civictrack.issues.domain import Location

from conftest import T0, InterleavedWriteRepository, build_services, hours


async def test_create_issue_sets_deadline_and_code(make_issue):
    issue = await make_issue(priority="urgent")

    assert issue.status == IssueStatus.PENDING
    assert issue.report_code == "R00001"
    assert issue.deadline == T0 + hours(24)
    assert issue.due_time == T0 + hours(24 * 7)
    assert issue.escalation_level == 1
    assert issue.penalty_points == 0
    assert issue.upvotes == 0
    assert issue.resolution_time is None
    assert issue.version == 1


async def test_report_codes_are_sequential(make_issue):
    first = await make_issue()
    second = await make_issue()
    assert (first.report_code, second.report_code) == ("R00001", "R00002")


async def test_missing_priority_defaults_to_medium(make_issue):
    issue = await make_issue(priority=None)
    assert issue.priority == Priority.MEDIUM
    assert issue.deadline == T0 + hours(72)


async def test_create_rejects_bad_input(make_issue):
    with pytest.raises(ValidationException):
        await make_issue(title="   ")
    with pytest.raises(ValidationException):
        await make_issue(category="Potholes")
    with pytest.raises(ValidationException):
        await make_issue(priority="critical")


def test_location_validation():
    with pytest.raises(ValueError):
        Location(address="")
    with pytest.raises(ValueError):
        Location(address="x", latitude=10.0)
    with pytest.raises(ValueError):
        Location(address="x", latitude=95.0, longitude=10.0)


async def test_creation_writes_initial_history(services, make_issue):
    issue = await make_issue()
    history = await services.lifecycle.get_history(issue.id)

    assert len(history) == 1
    assert history[0].from_status is None
    assert history[0].to_status == IssueStatus.PENDING
    assert history[0].changed_by == "citizen-1"


async def test_get_issue_projects_sla_at_read_time(services, make_issue):
    issue = await make_issue(priority="urgent")
    loaded = await services.lifecycle.get_issue(issue.id)

    assert loaded.hours_remaining(T0 + hours(1)) == 23
    assert not loaded.is_overdue(T0 + hours(1))
    assert loaded.is_overdue(T0 + hours(30))


async def test_unknown_issue_not_found(services):
    with pytest.raises(ResourceNotFoundException):
        await services.lifecycle.get_issue("00000000-0000-0000-0000-000000000000")
    with pytest.raises(ResourceNotFoundException):
        await services.lifecycle.get_issue("not-a-uuid")
    with pytest.raises(ResourceNotFoundException):
        await services.lifecycle.transition_issue("not-a-uuid", "assigned", actor_id="staff-1")


async def test_transition_appends_one_history_record_each(services, make_issue):
    issue = await make_issue()

    await services.lifecycle.transition_issue(
        issue.id, "assigned", actor_id="staff-1", assignee_id="staff-9", now=T0 + hours(1)
    )
    updated = await services.lifecycle.transition_issue(
        issue.id, "in-progress", actor_id="staff-9", notes="crew dispatched", now=T0 + hours(2)
    )

    assert updated.status == IssueStatus.IN_PROGRESS
    assert updated.assignee_id == "staff-9"
    assert updated.version == 3

    history = await services.lifecycle.get_history(issue.id)
    assert [(r.from_status, r.to_status) for r in history] == [
        (None, IssueStatus.PENDING),
        (IssueStatus.PENDING, IssueStatus.ASSIGNED),
        (IssueStatus.ASSIGNED, IssueStatus.IN_PROGRESS),
    ]
    assert history[-1].notes == "crew dispatched"


async def test_pending_to_resolved_is_rejected(services, make_issue):
    issue = await make_issue()

    with pytest.raises(InvalidTransitionException):
        await services.lifecycle.transition_issue(issue.id, "resolved", actor_id="staff-1")

    unchanged = await services.lifecycle.get_issue(issue.id)
    assert unchanged.status == IssueStatus.PENDING
    assert unchanged.version == 1
    assert len(await services.lifecycle.get_history(issue.id)) == 1


async def test_rejected_issue_is_terminal(services, make_issue):
    issue = await make_issue()
    rejected = await services.lifecycle.transition_issue(
        issue.id, "rejected", actor_id="staff-1", notes="duplicate of R00007"
    )
    assert rejected.rejection_reason == "duplicate of R00007"

    with pytest.raises(InvalidTransitionException):
        await services.lifecycle.transition_issue(issue.id, "assigned", actor_id="staff-1")


async def test_unknown_status_is_validation_error(services, make_issue):
    issue = await make_issue()
    with pytest.raises(ValidationException):
        await services.lifecycle.transition_issue(issue.id, "closed", actor_id="staff-1")


async def test_resolution_time_set_once(services, make_issue, resolve):
    issue = await make_issue()
    resolved = await resolve(issue, T0 + hours(5.25))
    assert resolved.resolution_time == 6

    # reopen through feedback, then resolve again later
    await services.feedback.submit_feedback(
        issue.id, "citizen-1", rating=1, comment="still dark", is_resolved=False,
        now=T0 + hours(10)
    )
    await services.lifecycle.transition_issue(issue.id, "in-progress", actor_id="staff-1", now=T0 + hours(11))
    again = await services.lifecycle.transition_issue(issue.id, "resolved", actor_id="staff-1", now=T0 + hours(40))

    assert again.status == IssueStatus.RESOLVED
    assert again.resolution_time == 6


async def test_expected_version_mismatch_is_stale_write(services, make_issue):
    issue = await make_issue()
    await services.lifecycle.transition_issue(issue.id, "assigned", actor_id="staff-1")

    with pytest.raises(StaleWriteException):
        await services.lifecycle.transition_issue(
            issue.id, "in-progress", actor_id="staff-2", expected_version=1
        )

    current = await services.lifecycle.get_issue(issue.id)
    assert current.status == IssueStatus.ASSIGNED
    assert len(await services.lifecycle.get_history(issue.id)) == 2


async def test_write_from_stale_session_is_rejected(session_factory, config_provider, make_issue):
    issue = await make_issue()

    async with session_factory() as first, session_factory() as second:
        staff_a = build_services(first, config_provider)
        staff_b = build_services(second, config_provider)

        seen_by_a = await staff_a.lifecycle.get_issue(issue.id)
        await staff_b.lifecycle.transition_issue(issue.id, "rejected", actor_id="staff-b")

        with pytest.raises(StaleWriteException):
            await staff_a.lifecycle.transition_issue(
                issue.id, "assigned", actor_id="staff-a", expected_version=seen_by_a.version
            )

        final = await staff_a.lifecycle.get_issue(issue.id)
        assert final.status == IssueStatus.REJECTED


async def test_naive_timestamps_are_read_as_utc(make_issue):
    issue = await make_issue(priority="urgent", now=T0.replace(tzinfo=None))

    assert issue.created_at == T0
    assert issue.deadline == T0 + hours(24)
    assert issue.deadline.tzinfo is not None


async def test_save_with_outdated_version_misses(session_factory, config_provider, services, make_issue):
    issue = await make_issue()

    async with session_factory() as other:
        await build_services(other, config_provider).lifecycle.transition_issue(
            issue.id, "assigned", actor_id="staff-2"
        )

    assert await services.issues.save(issue, issue.version) is False
    await services.uow.rollback()

    current = await services.lifecycle.get_issue(issue.id)
    assert current.status == IssueStatus.ASSIGNED
    assert current.version == 2


async def test_write_landing_between_read_and_save_is_stale(session, config_provider, services, make_issue):
    issue = await make_issue()
    racing = build_services(session, config_provider, issues=InterleavedWriteRepository(session))

    with pytest.raises(StaleWriteException):
        await racing.lifecycle.transition_issue(issue.id, "assigned", actor_id="staff-1")

    current = await services.lifecycle.get_issue(issue.id)
    assert current.status == IssueStatus.PENDING
    assert current.version == 1
    assert len(await services.lifecycle.get_history(issue.id)) == 1


async def test_priority_override_keeps_deadline(services, make_issue):
    issue = await make_issue(priority="low")

    updated = await services.lifecycle.override_priority(
        issue.id, "urgent", actor_id="admin-1", reason="school route", now=T0 + hours(3)
    )

    assert updated.priority == Priority.URGENT
    assert updated.deadline == issue.deadline == T0 + hours(120)
    assert updated.priority_overridden_by == "admin-1"
    assert updated.priority_overridden_at == T0 + hours(3)
    # not a status change
    assert len(await services.lifecycle.get_history(issue.id)) == 1


async def test_priority_override_rejects_unknown_priority(services, make_issue):
    issue = await make_issue()
    with pytest.raises(ValidationException):
        await services.lifecycle.override_priority(issue.id, "critical", actor_id="admin-1")


async def test_new_config_applies_to_new_issues_only(services, config_provider, make_issue, tmp_path):
    before = await make_issue(priority="urgent")

    path = tmp_path / "sla.yaml"
    path.write_text("sla_hours:\n  urgent: 6\n")
    config_provider.load(path)

    after = await make_issue(priority="urgent")
    reloaded = await services.lifecycle.get_issue(before.id)

    assert reloaded.deadline == T0 + hours(24)
    assert after.deadline == T0 + hours(6)
