import json
from datetime import timedelta

import httpx

from civictrack.config import IssueCategory, Priority
from civictrack.issues.domain import EscalationRecord, Issue, Location
from civictrack.issues.infrastructure import CircuitBreaker, SlackEscalationNotifier

from conftest import T0

WEBHOOK = "https://hooks.slack.test/services/T000/B000/XXX"


def make_issue() -> Issue:
    return Issue(
        id="6f1c2d9e-0000-4000-8000-000000000001",
        report_code="R00042",
        title="Overflowing bins",
        description="Bins at the market have not been cleared.",
        category=IssueCategory.WASTE_MANAGEMENT,
        priority=Priority.HIGH,
        location=Location(address="Market Yard"),
        reporter_id="citizen-1",
        department="Sanitation",
        created_at=T0,
        updated_at=T0,
        due_time=T0 + timedelta(days=7),
        deadline=T0 + timedelta(hours=48),
        ward="Ward 3",
    )


RECORD = EscalationRecord(
    level=2, escalated_at=T0 + timedelta(hours=50), target="Department Head", reason="SLA deadline exceeded"
)


def notifier_with(handler, **kwargs) -> SlackEscalationNotifier:
    return SlackEscalationNotifier(
        webhook_url=WEBHOOK,
        channel="#civic-escalations",
        retry_backoff=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


async def test_posts_block_kit_message():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, text="ok")

    notifier = notifier_with(handler)
    sent = await notifier.notify_escalation(make_issue(), RECORD, ["#department-heads"])
    await notifier.close()

    assert sent is True
    assert len(requests) == 1
    assert str(requests[0].url) == WEBHOOK
    body = json.loads(requests[0].content)
    assert body["channel"] == "#civic-escalations"
    text = json.dumps(body["blocks"])
    assert "R00042" in text
    assert "Department Head" in text
    assert "#department-heads" in text


async def test_retries_then_gives_up():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    notifier = notifier_with(handler, max_retries=3)
    sent = await notifier.notify_escalation(make_issue(), RECORD, [])
    await notifier.close()

    assert sent is False
    assert len(calls) == 3


async def test_transport_errors_are_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    notifier = notifier_with(handler, max_retries=2)
    assert await notifier.notify_escalation(make_issue(), RECORD, []) is False
    await notifier.close()


async def test_open_circuit_skips_delivery():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=3600)
    notifier = notifier_with(handler, max_retries=1, circuit_breaker=breaker)

    assert await notifier.notify_escalation(make_issue(), RECORD, []) is False
    assert await notifier.notify_escalation(make_issue(), RECORD, []) is False
    await notifier.close()

    assert len(calls) == 1
    assert breaker.state == "open"


async def test_without_webhook_nothing_is_sent():
    notifier = SlackEscalationNotifier(webhook_url=None)
    assert await notifier.notify_escalation(make_issue(), RECORD, []) is False
