import pytest

from civictrack.config import IssueStatus
from civictrack.core import InvalidTransitionException, ResourceNotFoundException

from conftest import T0, RecordingNotifier, build_services, hours


async def test_overdue_urgent_issue_escalates_to_level_two(services, make_issue, notifier):
    issue = await make_issue(priority="urgent")
    now = T0 + hours(30)

    escalated = await services.escalation.run_escalation_sweep(now)

    assert escalated == [issue.id]
    updated = await services.lifecycle.get_issue(issue.id)
    assert updated.is_overdue(now)
    assert updated.escalation_level == 2
    assert updated.penalty_points == 20
    assert updated.status == IssueStatus.ESCALATED
    assert updated.last_escalated_at == now

    assert len(updated.escalation_history) == 1
    record = updated.escalation_history[0]
    assert (record.level, record.target, record.escalated_at) == (2, "Department Head", now)

    assert notifier.sent == [(issue.id, 2, "Department Head", ["#department-heads"])]


async def test_escalation_writes_history_record(services, make_issue):
    issue = await make_issue(priority="urgent")
    await services.escalation.run_escalation_sweep(T0 + hours(30))

    history = await services.lifecycle.get_history(issue.id)
    assert [(r.from_status, r.to_status) for r in history] == [
        (None, IssueStatus.PENDING),
        (IssueStatus.PENDING, IssueStatus.ESCALATED),
    ]
    assert history[-1].changed_by is None


async def test_naive_sweep_time_is_read_as_utc(services, make_issue):
    issue = await make_issue(priority="urgent")

    escalated = await services.escalation.run_escalation_sweep((T0 + hours(30)).replace(tzinfo=None))

    assert escalated == [issue.id]
    updated = await services.lifecycle.get_issue(issue.id)
    assert updated.last_escalated_at == T0 + hours(30)


async def test_issue_not_yet_overdue_is_left_alone(services, make_issue):
    issue = await make_issue(priority="urgent")

    assert await services.escalation.run_escalation_sweep(T0 + hours(24)) == []
    assert (await services.lifecycle.get_issue(issue.id)).escalation_level == 1


async def test_sweep_is_idempotent_for_same_instant(services, make_issue):
    issue = await make_issue(priority="urgent")
    now = T0 + hours(60)

    first = await services.escalation.run_escalation_sweep(now)
    second = await services.escalation.run_escalation_sweep(now)

    assert first == [issue.id]
    assert second == []
    updated = await services.lifecycle.get_issue(issue.id)
    assert updated.escalation_level == 2
    assert updated.penalty_points == 20


async def test_one_level_per_sweep_and_capped_at_three(services, make_issue):
    issue = await make_issue(priority="urgent")
    deadline = T0 + hours(24)

    # far past every threshold, but only one step per sweep
    await services.escalation.run_escalation_sweep(deadline + hours(100))
    assert (await services.lifecycle.get_issue(issue.id)).escalation_level == 2

    await services.escalation.run_escalation_sweep(deadline + hours(101))
    top = await services.lifecycle.get_issue(issue.id)
    assert top.escalation_level == 3
    assert top.penalty_points == 20 + 30

    assert await services.escalation.run_escalation_sweep(deadline + hours(500)) == []
    capped = await services.lifecycle.get_issue(issue.id)
    assert capped.escalation_level == 3
    assert capped.penalty_points == 50
    assert [e.level for e in capped.escalation_history] == [2, 3]


async def test_top_level_waits_for_threshold(services, make_issue):
    issue = await make_issue(priority="urgent")
    deadline = T0 + hours(24)

    await services.escalation.run_escalation_sweep(deadline + hours(1))
    assert await services.escalation.run_escalation_sweep(deadline + hours(10)) == []
    assert (await services.lifecycle.get_issue(issue.id)).escalation_level == 2

    await services.escalation.run_escalation_sweep(deadline + hours(24))
    assert (await services.lifecycle.get_issue(issue.id)).escalation_level == 3


async def test_escalated_status_history_written_once(services, make_issue):
    issue = await make_issue(priority="urgent")
    deadline = T0 + hours(24)
    await services.escalation.run_escalation_sweep(deadline + hours(1))
    await services.escalation.run_escalation_sweep(deadline + hours(30))

    history = await services.lifecycle.get_history(issue.id)
    assert [r.to_status for r in history].count(IssueStatus.ESCALATED) == 1


async def test_terminal_issues_never_escalate(services, make_issue, resolve):
    resolved = await make_issue(priority="urgent")
    await resolve(resolved, T0 + hours(2))
    rejected = await make_issue(priority="urgent")
    await services.lifecycle.transition_issue(rejected.id, "rejected", actor_id="staff-1", now=T0 + hours(1))

    assert await services.escalation.run_escalation_sweep(T0 + hours(200)) == []
    for issue_id in (resolved.id, rejected.id):
        assert (await services.lifecycle.get_issue(issue_id)).escalation_level == 1


async def test_staff_can_pick_up_escalated_issue(services, make_issue):
    issue = await make_issue(priority="urgent")
    await services.escalation.run_escalation_sweep(T0 + hours(30))

    picked = await services.lifecycle.transition_issue(
        issue.id, "in-progress", actor_id="head-1", now=T0 + hours(31)
    )
    assert picked.status == IssueStatus.IN_PROGRESS
    assert picked.escalation_level == 2

    # still overdue and active, so the next threshold applies
    await services.escalation.run_escalation_sweep(T0 + hours(48))
    again = await services.lifecycle.get_issue(issue.id)
    assert again.escalation_level == 3
    assert again.status == IssueStatus.ESCALATED


async def test_guard_miss_leaves_issue_untouched(services, make_issue, session_factory, config_provider):
    issue = await make_issue(priority="urgent")
    now = T0 + hours(30)

    async with session_factory() as other:
        staff = build_services(other, config_provider)
        await staff.lifecycle.transition_issue(issue.id, "assigned", actor_id="staff-1", now=now)

    # the sweep read the issue as pending/level 1; the status no longer matches
    applied = await services.issues.compare_and_escalate(
        issue.id, 1, IssueStatus.PENDING, 2, 20, now
    )
    await services.uow.commit()

    assert applied is False
    current = await services.lifecycle.get_issue(issue.id)
    assert current.status == IssueStatus.ASSIGNED
    assert current.escalation_level == 1
    assert current.penalty_points == 0


async def test_failed_notification_does_not_undo_escalation(session, config_provider, make_issue):
    failing = build_services(session, config_provider, RecordingNotifier(fail=True))
    issue = await make_issue(priority="urgent")

    assert await failing.escalation.run_escalation_sweep(T0 + hours(30)) == [issue.id]
    assert (await failing.lifecycle.get_issue(issue.id)).escalation_level == 2


async def test_sweep_handles_many_issues(services, make_issue):
    due = [await make_issue(priority="urgent") for _ in range(3)]
    not_due = await make_issue(priority="low")

    escalated = await services.escalation.run_escalation_sweep(T0 + hours(30))

    assert sorted(escalated) == sorted(i.id for i in due)
    assert (await services.lifecycle.get_issue(not_due.id)).escalation_level == 1


# ========== Manual escalation ==========

async def test_manual_escalation_ignores_thresholds(services, make_issue, notifier):
    issue = await make_issue(priority="low")

    updated = await services.escalation.escalate_issue(
        issue.id, reason="Councillor complaint", actor_id="admin-1", now=T0 + hours(1)
    )

    assert updated.escalation_level == 2
    assert updated.status == IssueStatus.ESCALATED
    assert updated.penalty_points == 20
    assert updated.escalation_history[-1].reason == "Councillor complaint"
    assert notifier.sent[-1][1] == 2


async def test_manual_escalation_at_top_level_is_noop(services, make_issue):
    issue = await make_issue()
    await services.escalation.escalate_issue(issue.id, now=T0 + hours(1))
    top = await services.escalation.escalate_issue(issue.id, now=T0 + hours(2))
    assert top.escalation_level == 3

    again = await services.escalation.escalate_issue(issue.id, now=T0 + hours(3))
    assert again.escalation_level == 3
    assert again.penalty_points == top.penalty_points
    assert again.version == top.version


async def test_manual_escalation_of_resolved_issue_rejected(services, make_issue, resolve):
    issue = await make_issue()
    await resolve(issue, T0 + hours(1))

    with pytest.raises(InvalidTransitionException):
        await services.escalation.escalate_issue(issue.id, now=T0 + hours(2))


async def test_manual_escalation_unknown_issue(services):
    with pytest.raises(ResourceNotFoundException):
        await services.escalation.escalate_issue("00000000-0000-0000-0000-000000000000")


# ========== Dashboard ==========

async def test_dashboard_summary(services, make_issue, resolve):
    overdue = await make_issue(priority="urgent", ward="Ward 1")
    await services.escalation.run_escalation_sweep(T0 + hours(30))

    # created later so its 48h deadline lands on the dashboard day
    await make_issue(priority="high", now=T0 + hours(-18), ward="Ward 1")
    tomorrow = await make_issue(priority="urgent", now=T0 + hours(20), ward="Ward 2")
    on_time = await make_issue(priority="low", ward="Ward 2")
    await resolve(on_time, T0 + hours(10))

    now = T0 + hours(30)
    dashboard = await services.escalation.sla_dashboard(now)

    assert dashboard.summary.total_issues == 4
    assert dashboard.summary.overdue_issues == 1
    assert dashboard.summary.due_today == 1
    assert dashboard.summary.due_tomorrow == 1
    assert dashboard.summary.sla_compliance_rate == 100.0
    assert dashboard.escalation_stats.level2 == 1
    assert dashboard.issues[0].id == overdue.id
    assert dashboard.issues[0].hours_remaining == -6
    assert tomorrow.id in [row.id for row in dashboard.issues]

    by_ward = await services.escalation.sla_dashboard(now, ward="Ward 2")
    assert by_ward.summary.total_issues == 2
